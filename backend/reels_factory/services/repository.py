"""Persistence helpers for projects, sub-jobs and events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.orm import Session

from reels_factory.core.constants import ProjectStatus, Step, StepState, SubJobStatus
from reels_factory.models.project import Project, ProjectEvent, SubJob
from reels_factory.schemas.project import (
    ProjectOut,
    ProjectSummaryOut,
    StepStateOut,
    SubJobOut,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Public field name -> JSON text column.
_JSON_FIELDS = {
    "options": "options_json",
    "uploaded_images": "uploaded_images_json",
    "prompt_improvements": "prompt_improvements_json",
    "research_results": "research_results_json",
    "selected_insights": "selected_insights_json",
    "concepts": "concepts_json",
    "chosen_concept": "chosen_concept_json",
    "video_scripts": "video_scripts_json",
    "step_status": "step_status_json",
}
_PLAIN_FIELDS = {
    "title",
    "input_prompt",
    "refined_prompt",
    "final_artifact_url",
    "final_duration",
    "current_step",
    "status",
}
_SUB_JOB_FIELDS = {"status", "url", "error"}


class ConcurrencyConflict(RuntimeError):
    """A guarded write found the row changed since it was read."""


class StaleRunError(RuntimeError):
    """A write was attempted on behalf of a run that no longer owns the row."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _json_load(value: Optional[str], default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except Exception:
        return default


def _json_dump(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def step_states(project: Project) -> dict[int, dict[str, Any]]:
    raw = _json_load(project.step_status_json, {})
    return {int(key): dict(value) for key, value in raw.items() if isinstance(value, dict)}


def step_state(project: Project, step: int) -> dict[str, Any]:
    return step_states(project).get(int(step), {"state": StepState.NOT_STARTED.value})


def project_field(project: Project, name: str) -> Any:
    """Decoded value of a project field by its public name."""
    column = _JSON_FIELDS.get(name)
    if column is None:
        return getattr(project, name)
    default: Any = {} if name in {"options", "step_status"} else []
    if name == "chosen_concept":
        default = None
    return _json_load(getattr(project, column), default)


def to_sub_job_out(row: SubJob) -> SubJobOut:
    return SubJobOut(
        index=row.item_index,
        status=row.status,
        url=row.url,
        error=row.error,
        run_id=row.run_id,
        payload=_json_load(row.payload_json, {}),
    )


def to_project_out(project: Project, *, sub_jobs: Iterable[SubJob], points_used: int) -> ProjectOut:
    rows = list(sub_jobs)
    states = step_states(project)
    step_status = {
        int(step): StepStateOut.model_validate(states.get(int(step), {})) for step in Step
    }
    step_error = {
        step: str(entry["error"])
        for step, entry in states.items()
        if entry.get("error") and entry.get("state") != StepState.COMPLETED.value
    }
    return ProjectOut(
        id=project.id,
        user_id=project.user_id,
        title=project.title,
        input_prompt=project.input_prompt,
        options=project_field(project, "options"),
        uploaded_images=project_field(project, "uploaded_images"),
        refined_prompt=project.refined_prompt,
        prompt_improvements=project_field(project, "prompt_improvements"),
        research_results=project_field(project, "research_results"),
        selected_insights=project_field(project, "selected_insights"),
        concepts=project_field(project, "concepts"),
        chosen_concept=project_field(project, "chosen_concept"),
        video_scripts=project_field(project, "video_scripts"),
        video_clips=[to_sub_job_out(row) for row in rows if row.step == Step.VIDEO],
        final_clips=[to_sub_job_out(row) for row in rows if row.step == Step.SPEECH],
        final_artifact_url=project.final_artifact_url,
        final_duration=project.final_duration,
        current_step=project.current_step,
        status=project.status,
        step_status=step_status,
        step_error=step_error,
        points_used=points_used,
        version=project.version,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


def to_project_summary(project: Project) -> ProjectSummaryOut:
    return ProjectSummaryOut(
        id=project.id,
        title=project.title,
        status=project.status,
        current_step=project.current_step,
        final_artifact_url=project.final_artifact_url,
        created_at=project.created_at,
        updated_at=project.updated_at,
    )


def create_project(
    db: Session,
    *,
    project_id: str,
    user_id: str,
    title: str,
    prompt: str,
    options: dict[str, Any],
    uploaded_images: list[str],
) -> Project:
    project = Project(
        id=project_id,
        user_id=user_id,
        title=title,
        input_prompt=prompt,
        options_json=_json_dump(options),
        uploaded_images_json=_json_dump(uploaded_images),
        current_step=0,
        status=ProjectStatus.DRAFT.value,
        step_status_json="{}",
        version=1,
    )
    db.add(project)
    db.flush()
    append_event(db, project_id, ProjectStatus.DRAFT.value, "project created")
    return project


def list_projects(db: Session, user_id: str) -> list[Project]:
    stmt = select(Project).where(Project.user_id == user_id).order_by(Project.created_at.desc())
    return list(db.scalars(stmt))


def get_project(db: Session, project_id: str, *, fresh: bool = False) -> Optional[Project]:
    if fresh:
        return db.get(Project, project_id, populate_existing=True)
    return db.get(Project, project_id)


def delete_project(db: Session, project_id: str) -> bool:
    project = get_project(db, project_id)
    if not project:
        return False
    db.delete(project)
    db.flush()
    return True


def patch_project(
    db: Session,
    project_id: str,
    *,
    expected_version: Optional[int] = None,
    **fields: Any,
) -> int:
    """Write the given fields in one UPDATE and bump the version.

    With ``expected_version`` the write only lands if nobody else wrote the
    row since it was read; otherwise ConcurrencyConflict is raised.
    Returns the new version.
    """
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name in _JSON_FIELDS:
            values[_JSON_FIELDS[name]] = _json_dump(value)
        elif name in _PLAIN_FIELDS:
            values[name] = value
        else:
            raise ValueError(f"unknown project field: {name}")

    stmt = update(Project).where(Project.id == project_id)
    if expected_version is not None:
        stmt = stmt.where(Project.version == expected_version)
    stmt = stmt.values(version=Project.version + 1, **values)

    result = db.execute(stmt, execution_options={"synchronize_session": False})
    if result.rowcount == 0:
        if db.get(Project, project_id) is None:
            raise ValueError(f"project not found: {project_id}")
        raise ConcurrencyConflict(f"project {project_id} changed since version {expected_version}")
    db.expire_all()
    project = db.get(Project, project_id)
    return project.version


def retry_on_conflict(db: Session, operation: Callable[[], T], attempts: int = 5) -> T:
    """Run a read-merge-write operation, re-reading after each conflict.

    The session is rolled back between attempts, so callers commit any
    earlier work before handing the session over.
    """
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConcurrencyConflict:
            db.rollback()
            if attempt == attempts:
                raise
            logger.info("write conflict, retrying (attempt %s/%s)", attempt, attempts)
    raise AssertionError("unreachable")


def update_step_state(db: Session, project_id: str, step: int, **changes: Any) -> dict[str, Any]:
    """Merge ``changes`` into one step's state entry under a version guard."""

    def attempt() -> dict[str, Any]:
        project = get_project(db, project_id, fresh=True)
        if project is None:
            raise ValueError(f"project not found: {project_id}")
        states = step_states(project)
        entry = dict(states.get(int(step), {"state": StepState.NOT_STARTED.value}))
        entry.update(changes)
        states[int(step)] = entry
        patch_project(
            db,
            project_id,
            expected_version=project.version,
            step_status={str(key): value for key, value in states.items()},
        )
        return entry

    return retry_on_conflict(db, attempt)


def list_sub_jobs(db: Session, project_id: str, step: Optional[int] = None) -> list[SubJob]:
    stmt = select(SubJob).where(SubJob.project_id == project_id)
    if step is not None:
        stmt = stmt.where(SubJob.step == int(step))
    stmt = stmt.order_by(SubJob.step.asc(), SubJob.item_index.asc())
    return list(db.scalars(stmt.execution_options(populate_existing=True)))


def replace_sub_jobs(
    db: Session,
    project_id: str,
    step: int,
    *,
    run_id: str,
    payloads: list[dict[str, Any]],
) -> list[SubJob]:
    """Drop every unit of a step and create fresh pending ones."""
    db.execute(
        delete(SubJob).where(SubJob.project_id == project_id, SubJob.step == int(step)),
        execution_options={"synchronize_session": False},
    )
    rows = [
        SubJob(
            project_id=project_id,
            step=int(step),
            item_index=index,
            status=SubJobStatus.PENDING.value,
            run_id=run_id,
            payload_json=_json_dump(payload),
            version=1,
        )
        for index, payload in enumerate(payloads)
    ]
    db.add_all(rows)
    db.flush()
    return rows


def reset_sub_jobs(db: Session, project_id: str, step: int, *, run_id: str, indices: list[int]) -> None:
    """Hand the given units to a new run as pending, keeping their payload."""
    if not indices:
        return
    db.execute(
        update(SubJob)
        .where(
            SubJob.project_id == project_id,
            SubJob.step == int(step),
            SubJob.item_index.in_(indices),
        )
        .values(
            status=SubJobStatus.PENDING.value,
            run_id=run_id,
            error=None,
            version=SubJob.version + 1,
        ),
        execution_options={"synchronize_session": False},
    )
    db.expire_all()


def patch_sub_job(
    db: Session,
    project_id: str,
    step: int,
    index: int,
    *,
    run_id: Optional[str] = None,
    payload: Optional[dict[str, Any]] = None,
    **fields: Any,
) -> SubJob:
    """Update one unit by (project, step, index) without touching its siblings.

    A unit that has no row yet is created by its first write.
    """
    unknown = set(fields) - _SUB_JOB_FIELDS
    if unknown:
        raise ValueError(f"unknown sub-job fields: {sorted(unknown)}")

    def attempt() -> SubJob:
        stmt = select(SubJob).where(
            SubJob.project_id == project_id,
            SubJob.step == int(step),
            SubJob.item_index == index,
        )
        row = db.scalars(stmt.execution_options(populate_existing=True)).one_or_none()
        if row is None:
            created = db.execute(
                insert(SubJob)
                .values(
                    project_id=project_id,
                    step=int(step),
                    item_index=index,
                    status=fields.get("status", SubJobStatus.PENDING.value),
                    url=fields.get("url"),
                    error=fields.get("error"),
                    run_id=run_id,
                    payload_json=_json_dump(payload or {}),
                    version=1,
                )
                .on_conflict_do_nothing(index_elements=["project_id", "step", "item_index"])
            )
            if created.rowcount == 0:
                raise ConcurrencyConflict(f"sub-job {project_id}/{step}/{index} was created concurrently")
            return db.scalars(stmt.execution_options(populate_existing=True)).one()
        if run_id is not None and row.run_id != run_id:
            raise StaleRunError(f"sub-job {project_id}/{step}/{index} belongs to run {row.run_id}")

        merged = _json_load(row.payload_json, {})
        merged.update(payload or {})
        result = db.execute(
            update(SubJob)
            .where(SubJob.id == row.id, SubJob.version == row.version)
            .values(version=SubJob.version + 1, payload_json=_json_dump(merged), **fields),
            execution_options={"synchronize_session": False},
        )
        if result.rowcount == 0:
            raise ConcurrencyConflict(f"sub-job {project_id}/{step}/{index} changed concurrently")
        db.expire(row)
        return row

    return retry_on_conflict(db, attempt)


def sub_job_payload(row: SubJob) -> dict[str, Any]:
    return _json_load(row.payload_json, {})


def append_event(
    db: Session,
    project_id: str,
    status: str,
    message: str,
    step: Optional[int] = None,
) -> ProjectEvent:
    event = ProjectEvent(
        project_id=project_id,
        step=int(step) if step is not None else None,
        status=status,
        message=message,
    )
    db.add(event)
    db.flush()
    return event


def list_events(db: Session, project_id: str, after_id: int = 0) -> list[ProjectEvent]:
    stmt = (
        select(ProjectEvent)
        .where(ProjectEvent.project_id == project_id, ProjectEvent.id > after_id)
        .order_by(ProjectEvent.id.asc())
    )
    return list(db.scalars(stmt))


def running_step(project: Project) -> Optional[int]:
    for step, entry in step_states(project).items():
        if entry.get("state") == StepState.RUNNING.value:
            return step
    return None


def list_running_steps(db: Session) -> list[tuple[str, int, str]]:
    """(project_id, step, run_id) for every step recorded as running."""
    stmt = (
        select(Project)
        .where(Project.status == ProjectStatus.PROCESSING.value)
        .order_by(Project.created_at.asc())
    )
    running: list[tuple[str, int, str]] = []
    for project in db.scalars(stmt):
        for step, entry in sorted(step_states(project).items()):
            if entry.get("state") == StepState.RUNNING.value and entry.get("run_id"):
                running.append((project.id, step, str(entry["run_id"])))
    return running
