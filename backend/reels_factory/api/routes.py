"""FastAPI route definitions."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, UploadFile
from sse_starlette.sse import EventSourceResponse
from sqlalchemy.orm import Session

from reels_factory.core.settings import APP_VERSION, PATHS
from reels_factory.db.session import SessionLocal, get_db_session
from reels_factory.models.project import Project
from reels_factory.schemas.config import AppConfig
from reels_factory.schemas.project import (
    CreditBalanceOut,
    CreditGrantRequest,
    LedgerEntryOut,
    ProjectCreateRequest,
    ProjectCreateResponse,
    ProjectEventOut,
    ProjectLedgerOut,
    ProjectOut,
    ProjectSummaryOut,
    ScriptApprovalRequest,
    StepStateOut,
    StepTriggerRequest,
    StepTriggerResponse,
)
from reels_factory.services import ledger, repository
from reels_factory.services.config_store import load_config, redact_config, save_config
from reels_factory.services.media import ffmpeg_available
from reels_factory.services.object_store import LocalObjectStore
from reels_factory.services.pipeline import (
    AlreadyRunning,
    NotProjectOwner,
    PreconditionFailed,
    ProjectNotFound,
    StepMachine,
    StepRejected,
    build_step_machine,
)
from reels_factory.workers.queue import enqueue_step

router = APIRouter(prefix="/api", tags=["api"])

IMAGE_TYPES = {"image/png", "image/jpeg", "image/webp"}
MAX_IMAGE_BYTES = 10 * 1024 * 1024


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


def get_step_machine() -> StepMachine:
    return build_step_machine(dispatch=enqueue_step)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ProjectNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotProjectOwner):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ledger.InsufficientCredits):
        return HTTPException(status_code=402, detail=str(exc))
    if isinstance(exc, (PreconditionFailed, AlreadyRunning, StepRejected)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _owned_project(db: Session, project_id: str, user_id: str) -> Project:
    project = repository.get_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.user_id != user_id:
        raise HTTPException(status_code=403, detail="Project belongs to another user")
    return project


def _project_out(db: Session, project: Project) -> ProjectOut:
    return repository.to_project_out(
        project,
        sub_jobs=repository.list_sub_jobs(db, project.id),
        points_used=ledger.net_spent(db, project.id),
    )


async def _read_upload(upload: UploadFile, max_bytes: int) -> bytes:
    chunks: list[bytes] = []
    written = 0
    while True:
        chunk = await upload.read(1024 * 1024)
        if not chunk:
            break
        written += len(chunk)
        if written > max_bytes:
            raise HTTPException(status_code=413, detail="Uploaded file exceeds max size")
        chunks.append(chunk)
    return b"".join(chunks)


@router.get("/health")
def health(db: Session = Depends(get_db_session)) -> dict[str, object]:
    running = len(repository.list_running_steps(db))
    return {
        "version": APP_VERSION,
        "ffmpeg_available": ffmpeg_available(),
        "queue_db": str(PATHS.queue_path),
        "running_steps": running,
    }


@router.get("/config", response_model=AppConfig)
def get_config() -> AppConfig:
    return redact_config(load_config())


@router.put("/config", response_model=AppConfig)
def put_config(config: AppConfig) -> AppConfig:
    current = load_config()
    # Masked keys coming back from GET keep their stored value.
    for name in ("llm", "research", "video", "speech"):
        section = getattr(config, name)
        if "****" in section.api_key:
            section.api_key = getattr(current, name).api_key
    return redact_config(save_config(config))


@router.post("/projects", response_model=ProjectCreateResponse)
def create_project(
    payload: ProjectCreateRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> ProjectCreateResponse:
    prompt = payload.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="prompt is required")

    config = load_config()
    ledger.ensure_account(db, user_id, signup_grant=config.credits.signup_grant)

    project_id = uuid.uuid4().hex
    title = (payload.title or "").strip() or prompt[:60]
    project = repository.create_project(
        db,
        project_id=project_id,
        user_id=user_id,
        title=title,
        prompt=prompt,
        options=payload.options.model_dump(),
        uploaded_images=payload.images,
    )
    db.commit()
    return ProjectCreateResponse(project_id=project_id, status=project.status, current_step=project.current_step)


@router.get("/projects", response_model=list[ProjectSummaryOut])
def list_projects(
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> list[ProjectSummaryOut]:
    return [repository.to_project_summary(project) for project in repository.list_projects(db, user_id)]


@router.get("/projects/{project_id}", response_model=ProjectOut)
def get_project(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> ProjectOut:
    project = _owned_project(db, project_id, user_id)
    return _project_out(db, project)


@router.post("/projects/{project_id}/images", response_model=ProjectOut)
async def upload_project_image(
    project_id: str,
    image_file: UploadFile = File(...),
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> ProjectOut:
    project = _owned_project(db, project_id, user_id)
    content_type = (image_file.content_type or "").lower()
    if content_type not in IMAGE_TYPES:
        raise HTTPException(status_code=400, detail=f"Unsupported image type: {content_type or 'unknown'}")

    data = await _read_upload(image_file, MAX_IMAGE_BYTES)
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded image is empty")

    store = LocalObjectStore(PATHS.artifacts_root, load_config().storage.public_base_url)
    url = await store.upload(data, content_type, prefix=f"uploads/{project_id}")

    def attempt() -> None:
        fresh = repository.get_project(db, project_id, fresh=True)
        images = repository.project_field(fresh, "uploaded_images")
        repository.patch_project(
            db, project_id, expected_version=fresh.version, uploaded_images=[*images, url]
        )
        db.commit()

    repository.retry_on_conflict(db, attempt)
    return _project_out(db, repository.get_project(db, project.id, fresh=True))


@router.delete("/projects/{project_id}")
def delete_project(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    project = _owned_project(db, project_id, user_id)
    busy = repository.running_step(project)
    if busy is not None:
        raise HTTPException(status_code=409, detail=f"Step {busy} is running; cancel it first")

    repository.delete_project(db, project_id)
    db.commit()
    return {"deleted": True, "project_id": project_id}


@router.post("/projects/{project_id}/steps/{step}", response_model=StepTriggerResponse)
async def trigger_step(
    project_id: str,
    step: int,
    payload: Optional[StepTriggerRequest] = None,
    user_id: str = Depends(get_current_user),
    machine: StepMachine = Depends(get_step_machine),
) -> StepTriggerResponse:
    inputs = (payload or StepTriggerRequest()).inputs.model_dump(exclude_none=True)
    try:
        accepted = await machine.advance(project_id, step, user_id=user_id, inputs=inputs)
    except (StepRejected, ledger.InsufficientCredits) as exc:
        raise _http_error(exc) from exc

    return StepTriggerResponse(
        project_id=accepted.project_id,
        step=accepted.step,
        run_id=accepted.run_id,
        step_state=accepted.state,
        background=accepted.background,
        error=accepted.error,
    )


@router.post("/projects/{project_id}/steps/{step}/cancel", response_model=StepStateOut)
def cancel_step(
    project_id: str,
    step: int,
    user_id: str = Depends(get_current_user),
    machine: StepMachine = Depends(get_step_machine),
) -> StepStateOut:
    try:
        entry = machine.request_cancel(project_id, step, user_id=user_id)
    except StepRejected as exc:
        raise _http_error(exc) from exc
    return StepStateOut.model_validate(entry)


@router.put("/projects/{project_id}/scripts/approval", response_model=list[dict])
def approve_scripts(
    project_id: str,
    payload: ScriptApprovalRequest,
    user_id: str = Depends(get_current_user),
    machine: StepMachine = Depends(get_step_machine),
) -> list[dict]:
    try:
        return machine.set_script_approval(
            project_id,
            user_id=user_id,
            approved=payload.approved,
            approve_all=payload.approve_all,
        )
    except StepRejected as exc:
        raise _http_error(exc) from exc


@router.get("/projects/{project_id}/ledger", response_model=ProjectLedgerOut)
def get_project_ledger(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> ProjectLedgerOut:
    _owned_project(db, project_id, user_id)
    entries = [
        LedgerEntryOut.model_validate(entry, from_attributes=True) for entry in ledger.list_entries(db, project_id)
    ]
    return ProjectLedgerOut(project_id=project_id, points_used=ledger.net_spent(db, project_id), entries=entries)


@router.get("/credits", response_model=CreditBalanceOut)
def get_credits(
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> CreditBalanceOut:
    balance = ledger.ensure_account(db, user_id, signup_grant=load_config().credits.signup_grant)
    db.commit()
    return CreditBalanceOut(user_id=user_id, balance=balance)


@router.post("/credits/grant", response_model=CreditBalanceOut)
def grant_credits(
    payload: CreditGrantRequest,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> CreditBalanceOut:
    if user_id not in load_config().credits.admin_user_ids:
        raise HTTPException(status_code=403, detail="Only administrators can grant credits")

    target = (payload.user_id or user_id).strip()
    balance = ledger.grant(db, target, payload.amount, reason=payload.reason)
    db.commit()
    return CreditBalanceOut(user_id=target, balance=balance)


@router.get("/projects/{project_id}/events")
async def stream_project_events(
    project_id: str,
    user_id: str = Depends(get_current_user),
    db: Session = Depends(get_db_session),
) -> EventSourceResponse:
    _owned_project(db, project_id, user_id)

    async def event_generator():
        last_id = 0
        while True:
            with SessionLocal() as session:
                events = repository.list_events(session, project_id, after_id=last_id)
                project = repository.get_project(session, project_id)
                idle = project is None or repository.running_step(project) is None

            for event in events:
                last_id = event.id
                payload = ProjectEventOut.model_validate(event, from_attributes=True).model_dump(mode="json")
                yield {
                    "event": "project_event",
                    "id": str(event.id),
                    "data": json.dumps(payload, ensure_ascii=False),
                }

            if idle and not events:
                yield {"event": "end", "data": json.dumps({"project_id": project_id})}
                break

            await asyncio.sleep(1)

    return EventSourceResponse(event_generator())
