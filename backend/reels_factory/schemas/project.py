"""Pydantic schemas for project, step and credit API payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProjectOptions(BaseModel):
    target: str = ""
    tone: str = ""
    purpose: str = ""


class ProjectCreateRequest(BaseModel):
    prompt: str
    title: Optional[str] = None
    options: ProjectOptions = Field(default_factory=ProjectOptions)
    images: list[str] = Field(default_factory=list)


class ProjectCreateResponse(BaseModel):
    project_id: str
    status: str
    current_step: int


class StepInputs(BaseModel):
    prompt: Optional[str] = None
    selected_insights: Optional[list[str]] = None
    concept_id: Optional[str] = None
    retry_failed: bool = False


class StepTriggerRequest(BaseModel):
    inputs: StepInputs = Field(default_factory=StepInputs)


class StepTriggerResponse(BaseModel):
    accepted: bool = True
    project_id: str
    step: int
    run_id: str
    step_state: str
    background: bool
    error: Optional[str] = None


class ScriptApprovalRequest(BaseModel):
    approved: dict[int, bool] = Field(default_factory=dict)
    approve_all: bool = False


class StepStateOut(BaseModel):
    state: str = "not_started"
    run_id: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    cancel_requested: bool = False
    error: Optional[str] = None
    total: int = 0
    completed: int = 0
    failed: int = 0


class SubJobOut(BaseModel):
    index: int
    status: str
    url: Optional[str]
    error: Optional[str]
    run_id: Optional[str]
    payload: dict[str, Any]


class ProjectEventOut(BaseModel):
    id: int
    project_id: str
    step: Optional[int]
    status: str
    message: str
    created_at: datetime


class ProjectSummaryOut(BaseModel):
    id: str
    title: str
    status: str
    current_step: int
    final_artifact_url: Optional[str]
    created_at: datetime
    updated_at: datetime


class ProjectOut(BaseModel):
    id: str
    user_id: str
    title: str
    input_prompt: str
    options: dict[str, Any]
    uploaded_images: list[str]
    refined_prompt: Optional[str]
    prompt_improvements: list[str]
    research_results: list[dict[str, Any]]
    selected_insights: list[str]
    concepts: list[dict[str, Any]]
    chosen_concept: Optional[dict[str, Any]]
    video_scripts: list[dict[str, Any]]
    video_clips: list[SubJobOut]
    final_clips: list[SubJobOut]
    final_artifact_url: Optional[str]
    final_duration: Optional[float]
    current_step: int
    status: str
    step_status: dict[int, StepStateOut]
    step_error: dict[int, str]
    points_used: int
    version: int
    created_at: datetime
    updated_at: datetime


class LedgerEntryOut(BaseModel):
    id: int
    project_id: Optional[str]
    step_id: Optional[int]
    run_id: Optional[str]
    item_key: str
    amount: int
    direction: str
    reason: Optional[str]
    created_at: datetime


class ProjectLedgerOut(BaseModel):
    project_id: str
    points_used: int
    entries: list[LedgerEntryOut]


class CreditBalanceOut(BaseModel):
    user_id: str
    balance: int


class CreditGrantRequest(BaseModel):
    user_id: Optional[str] = None
    amount: int = Field(gt=0)
    reason: str = "manual grant"
