"""Project, sub-job and event persistence models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reels_factory.db.base import Base


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    input_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    options_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    uploaded_images_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    refined_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prompt_improvements_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    research_results_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    selected_insights_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    concepts_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    chosen_concept_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_scripts_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    final_artifact_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    final_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    step_status_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    events: Mapped[list["ProjectEvent"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectEvent.id",
    )
    sub_jobs: Mapped[list["SubJob"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="SubJob.item_index",
    )


class SubJob(Base):
    """One unit of a fan-out step (a clip for step 4, a voiced clip for step 5)."""

    __tablename__ = "sub_jobs"
    __table_args__ = (
        UniqueConstraint("project_id", "step", "item_index", name="uq_sub_jobs_project_step_index"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id"), nullable=False, index=True
    )
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    item_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    project: Mapped[Project] = relationship(back_populates="sub_jobs")


class ProjectEvent(Base):
    __tablename__ = "project_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id"), nullable=False, index=True
    )
    step: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )

    project: Mapped[Project] = relationship(back_populates="events")
