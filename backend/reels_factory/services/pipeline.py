"""Step state machine: gating, charging, execution and settlement."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from reels_factory.core.constants import (
    BACKGROUND_STEPS,
    FANOUT_STEPS,
    FLAT_ITEM_KEY,
    STEP_NAMES,
    ProjectStatus,
    Step,
    StepState,
    SubJobStatus,
)
from reels_factory.core.settings import PATHS
from reels_factory.db.session import SessionLocal
from reels_factory.models.project import Project
from reels_factory.schemas.config import AppConfig
from reels_factory.services import ledger, repository
from reels_factory.services.adapters import ReelsAdapters
from reels_factory.services.config_store import load_config
from reels_factory.services.fanout import (
    CancelToken,
    FanOutCoordinator,
    FanOutHooks,
    FanOutItem,
    FanOutOutcome,
    outcome_for,
)
from reels_factory.services.generative import TimeoutFailure
from reels_factory.services.media import ComposeClip, MediaComposer, SubtitleStyle, ffmpeg_available
from reels_factory.services.object_store import LocalObjectStore

logger = logging.getLogger(__name__)


class PipelineError(RuntimeError):
    pass


class StepRejected(RuntimeError):
    code = "rejected"


class ProjectNotFound(StepRejected):
    code = "not_found"


class NotProjectOwner(StepRejected):
    code = "forbidden"


class PreconditionFailed(StepRejected):
    code = "precondition_failed"


class AlreadyRunning(StepRejected):
    code = "already_running"


class StepCancelled(RuntimeError):
    pass


@dataclass(frozen=True)
class StepAccepted:
    project_id: str
    step: int
    run_id: str
    state: str
    background: bool
    error: Optional[str] = None


@dataclass
class StepPlan:
    items: dict[str, int]
    fields: dict[str, Any] = field(default_factory=dict)
    fresh_units: Optional[list[dict[str, Any]]] = None
    retry_units: list[int] = field(default_factory=list)

    @property
    def unit_count(self) -> int:
        if self.fresh_units is not None:
            return len(self.fresh_units)
        return len(self.retry_units)


@dataclass(frozen=True)
class UnitOutput:
    url: str
    payload: dict[str, Any]


Dispatcher = Callable[[str, int, str], None]
ComposerFactory = Callable[[], MediaComposer]


def coerce_step(value: Any) -> Step:
    try:
        return Step(int(value))
    except (TypeError, ValueError) as exc:
        raise PreconditionFailed(f"unknown step: {value}") from exc


def _status_after(step: Step, state: StepState) -> str:
    if state == StepState.COMPLETED:
        return (ProjectStatus.COMPLETED if step == Step.COMPOSE else ProjectStatus.DRAFT).value
    if state == StepState.PARTIAL:
        return ProjectStatus.PARTIAL.value
    if state == StepState.FAILED and (step == Step.COMPOSE or step in FANOUT_STEPS):
        return ProjectStatus.FAILED.value
    return ProjectStatus.DRAFT.value


class _SubJobHooks(FanOutHooks):
    """Persists each unit's transitions; a failed unit's charge is refunded with it."""

    def __init__(self, machine: "StepMachine", *, project_id: str, step: Step, run_id: str, user_id: str) -> None:
        self.machine = machine
        self.project_id = project_id
        self.step = step
        self.run_id = run_id
        self.user_id = user_id

    async def on_processing(self, index: int) -> None:
        with self.machine.session_factory() as db:
            repository.patch_sub_job(
                db,
                self.project_id,
                self.step,
                index,
                run_id=self.run_id,
                status=SubJobStatus.PROCESSING.value,
                error=None,
            )
            db.commit()

    async def on_completed(self, index: int, output: UnitOutput) -> None:
        with self.machine.session_factory() as db:
            repository.patch_sub_job(
                db,
                self.project_id,
                self.step,
                index,
                run_id=self.run_id,
                payload=output.payload,
                status=SubJobStatus.COMPLETED.value,
                url=output.url,
                error=None,
            )
            repository.append_event(
                db, self.project_id, SubJobStatus.COMPLETED.value, f"unit {index} completed", step=self.step
            )
            db.commit()

    async def on_failed(self, index: int, error: str) -> None:
        with self.machine.session_factory() as db:
            repository.patch_sub_job(
                db,
                self.project_id,
                self.step,
                index,
                run_id=self.run_id,
                status=SubJobStatus.FAILED.value,
                error=error,
            )
            ledger.refund(
                db,
                user_id=self.user_id,
                project_id=self.project_id,
                step_id=self.step,
                run_id=self.run_id,
                item_key=str(index),
                reason=error,
            )
            repository.append_event(
                db, self.project_id, SubJobStatus.FAILED.value, f"unit {index} failed: {error}", step=self.step
            )
            db.commit()


class StepMachine:
    """Owns every transition of a project's step pointer and step states.

    ``advance`` validates and charges a step, then either runs it inline
    (steps 0-3) or hands it to ``dispatch`` (steps 4-6). ``execute_step``
    runs an accepted step to settlement; settlement writes the outputs, the
    final step state and any refunds in one guarded transaction.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        config: AppConfig,
        adapters: ReelsAdapters,
        composer_factory: ComposerFactory,
        dispatch: Optional[Dispatcher] = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.adapters = adapters
        self.composer_factory = composer_factory
        self.dispatch = dispatch
        self.coordinator = FanOutCoordinator(item_timeout_s=config.pipeline.item_timeout_s)

    def _owned(self, db: Session, project_id: str, user_id: str) -> Project:
        project = repository.get_project(db, project_id, fresh=True)
        if project is None:
            raise ProjectNotFound(f"project not found: {project_id}")
        if project.user_id != user_id:
            raise NotProjectOwner(f"project {project_id} belongs to another user")
        return project

    async def advance(
        self,
        project_id: str,
        step: Any,
        *,
        user_id: str,
        inputs: Optional[dict[str, Any]] = None,
    ) -> StepAccepted:
        step = coerce_step(step)
        with self.session_factory() as db:
            run_id = self._start(db, project_id, step, user_id, dict(inputs or {}))

        if step in BACKGROUND_STEPS and self.dispatch is not None:
            try:
                self.dispatch(project_id, int(step), run_id)
            except Exception as exc:
                logger.exception("failed to dispatch step %s of %s", int(step), project_id)
                self._settle(
                    project_id,
                    step,
                    run_id,
                    state=StepState.FAILED,
                    error=f"could not schedule step: {exc}",
                    refund_all=True,
                )
                raise
            return StepAccepted(project_id, int(step), run_id, StepState.RUNNING.value, background=True)

        entry = await self.execute_step(project_id, int(step), run_id)
        return StepAccepted(
            project_id,
            int(step),
            run_id,
            str(entry.get("state", StepState.FAILED.value)),
            background=False,
            error=entry.get("error"),
        )

    def _start(self, db: Session, project_id: str, step: Step, user_id: str, inputs: dict[str, Any]) -> str:
        for attempt in range(1, 6):
            project = self._owned(db, project_id, user_id)
            busy = repository.running_step(project)
            if busy is not None:
                raise AlreadyRunning(f"step {busy} is already running")
            if step > project.current_step:
                raise PreconditionFailed(
                    f"step {int(step)} is not reachable yet (current step is {project.current_step})"
                )

            plan = self._plan(db, project, step, inputs)
            run_id = uuid.uuid4().hex
            try:
                if sum(plan.items.values()) > 0:
                    ledger.charge(
                        db,
                        user_id=project.user_id,
                        project_id=project_id,
                        step_id=int(step),
                        run_id=run_id,
                        items=plan.items,
                    )
                states = repository.step_states(project)
                states[int(step)] = {
                    "state": StepState.RUNNING.value,
                    "run_id": run_id,
                    "started_at": repository.utc_now_iso(),
                    "finished_at": None,
                    "cancel_requested": False,
                    "error": None,
                    "total": plan.unit_count,
                    "completed": 0,
                    "failed": 0,
                }
                if step == Step.VIDEO and plan.fresh_units is not None:
                    # New clips invalidate the voiced clips and the final cut built on the old ones.
                    states.pop(int(Step.SPEECH), None)
                    states.pop(int(Step.COMPOSE), None)
                repository.patch_project(
                    db,
                    project_id,
                    expected_version=project.version,
                    status=ProjectStatus.PROCESSING.value,
                    step_status=states,
                    **plan.fields,
                )
                if plan.fresh_units is not None:
                    repository.replace_sub_jobs(db, project_id, step, run_id=run_id, payloads=plan.fresh_units)
                    if step == Step.VIDEO:
                        repository.replace_sub_jobs(db, project_id, Step.SPEECH, run_id=run_id, payloads=[])
                elif plan.retry_units:
                    repository.reset_sub_jobs(db, project_id, step, run_id=run_id, indices=plan.retry_units)
                repository.append_event(
                    db, project_id, StepState.RUNNING.value, f"{STEP_NAMES[step]} started", step=step
                )
                db.commit()
            except repository.ConcurrencyConflict:
                db.rollback()
                logger.info("project %s changed while starting step %s (attempt %s)", project_id, int(step), attempt)
                continue
            except ledger.InsufficientCredits:
                db.rollback()
                raise

            logger.info("step %s of %s started (run %s)", int(step), project_id, run_id)
            return run_id

        raise AlreadyRunning(f"project {project_id} is being modified concurrently")

    def _plan(self, db: Session, project: Project, step: Step, inputs: dict[str, Any]) -> StepPlan:
        cost = self.config.credits.cost_of(step)
        flat = {FLAT_ITEM_KEY: cost}

        if step == Step.REFINE:
            prompt = str(inputs.get("prompt") or project.input_prompt or "").strip()
            if not prompt:
                raise PreconditionFailed("prompt is empty")
            return StepPlan(items=flat, fields={"input_prompt": prompt})

        if step == Step.RESEARCH:
            if not (project.refined_prompt or "").strip():
                raise PreconditionFailed("prompt has not been refined yet")
            return StepPlan(items=flat)

        if step == Step.CONCEPT:
            research = repository.project_field(project, "research_results")
            if not research:
                raise PreconditionFailed("research results are empty")
            fields: dict[str, Any] = {}
            selected = inputs.get("selected_insights")
            if selected is not None:
                known = {str(item.get("id")) for item in research}
                unknown = [item for item in selected if str(item) not in known]
                if unknown:
                    raise PreconditionFailed(f"unknown insight ids: {', '.join(map(str, unknown))}")
                fields["selected_insights"] = [str(item) for item in selected]
            return StepPlan(items=flat, fields=fields)

        if step == Step.SCRIPT:
            fields = {}
            concept_id = inputs.get("concept_id")
            if concept_id:
                concepts = repository.project_field(project, "concepts")
                chosen = next((item for item in concepts if str(item.get("id")) == str(concept_id)), None)
                if chosen is None:
                    raise PreconditionFailed(f"unknown concept id: {concept_id}")
                fields["chosen_concept"] = chosen
            elif not repository.project_field(project, "chosen_concept"):
                raise PreconditionFailed("no concept has been chosen")
            return StepPlan(items=flat, fields=fields)

        if step == Step.VIDEO:
            scripts = [item for item in repository.project_field(project, "video_scripts") if item.get("approved")]
            if not scripts:
                raise PreconditionFailed("no approved scripts")
            if inputs.get("retry_failed"):
                return self._retry_plan(db, project, step, cost)
            units = [{"script_index": item["video_index"], "duration": item.get("duration")} for item in scripts]
            return StepPlan(items={str(idx): cost for idx in range(len(units))}, fresh_units=units)

        if step == Step.SPEECH:
            clips = [
                row
                for row in repository.list_sub_jobs(db, project.id, Step.VIDEO)
                if row.status == SubJobStatus.COMPLETED.value and row.url
            ]
            if not clips:
                raise PreconditionFailed("no completed video clips")
            if inputs.get("retry_failed"):
                return self._retry_plan(db, project, step, cost)
            units = []
            for row in clips:
                payload = repository.sub_job_payload(row)
                units.append(
                    {
                        "clip_index": row.item_index,
                        "script_index": payload.get("script_index"),
                        "video_url": row.url,
                        "duration": payload.get("duration"),
                    }
                )
            return StepPlan(items={str(idx): cost for idx in range(len(units))}, fresh_units=units)

        rows = repository.list_sub_jobs(db, project.id, Step.SPEECH)
        if not rows or any(row.status != SubJobStatus.COMPLETED.value for row in rows):
            raise PreconditionFailed("every voiced clip must be completed before composing")
        clips = {
            (row.item_index, row.url)
            for row in repository.list_sub_jobs(db, project.id, Step.VIDEO)
            if row.status == SubJobStatus.COMPLETED.value
        }
        voiced = {(repository.sub_job_payload(row).get("clip_index"), row.url) for row in rows}
        if voiced != clips:
            raise PreconditionFailed("video clips changed since speech was generated; run step 5 again")
        return StepPlan(items=flat)

    def _retry_plan(self, db: Session, project: Project, step: Step, cost: int) -> StepPlan:
        rows = repository.list_sub_jobs(db, project.id, step)
        retry = [row.item_index for row in rows if row.status != SubJobStatus.COMPLETED.value]
        if not retry:
            raise PreconditionFailed(f"step {int(step)} has no failed units to retry")
        return StepPlan(items={str(idx): cost for idx in retry}, retry_units=retry)

    async def execute_step(self, project_id: str, step: int, run_id: str) -> dict[str, Any]:
        """Run an accepted step to settlement and return its final state entry."""
        step = coerce_step(step)
        with self.session_factory() as db:
            project = repository.get_project(db, project_id)
            if project is None:
                logger.warning("project %s vanished before step %s ran", project_id, int(step))
                return {"state": StepState.FAILED.value, "error": "project not found"}
            entry = repository.step_state(project, step)
            user_id = project.user_id

        if entry.get("run_id") != run_id or entry.get("state") != StepState.RUNNING.value:
            logger.info("skipping run %s of step %s for %s: no longer current", run_id, int(step), project_id)
            return entry
        if not self._touch_lease(project_id, step, run_id, claim=True):
            logger.info("skipping run %s of step %s for %s: another worker holds it", run_id, int(step), project_id)
            return entry

        token = CancelToken(
            check=lambda: self._cancel_requested(project_id, step, run_id),
            poll_interval_s=self.config.pipeline.cancel_poll_interval_s,
        )
        heartbeat = asyncio.ensure_future(self._heartbeat(project_id, step, run_id))
        try:
            if step in FANOUT_STEPS:
                return await self._execute_fanout(project_id, step, run_id, user_id, token)
            return await self._execute_single(project_id, step, run_id, token)
        finally:
            heartbeat.cancel()

    @property
    def lease_s(self) -> float:
        return 3 * self.config.pipeline.heartbeat_interval_s

    def _lease_remaining(self, entry: dict[str, Any]) -> float:
        beat = entry.get("heartbeat_at")
        if not beat:
            return 0.0
        age = (datetime.now(timezone.utc) - datetime.fromisoformat(beat)).total_seconds()
        return max(0.0, self.lease_s - age)

    def _touch_lease(self, project_id: str, step: Step, run_id: str, *, claim: bool = False) -> bool:
        """Stamp the run's heartbeat; with ``claim`` only if no live worker holds it."""
        with self.session_factory() as db:

            def attempt() -> bool:
                project = repository.get_project(db, project_id, fresh=True)
                if project is None:
                    return False
                states = repository.step_states(project)
                entry = states.get(int(step))
                if not entry or entry.get("run_id") != run_id or entry.get("state") != StepState.RUNNING.value:
                    return False
                if claim and self._lease_remaining(entry) > 0:
                    return False
                entry["heartbeat_at"] = repository.utc_now_iso()
                repository.patch_project(db, project_id, expected_version=project.version, step_status=states)
                db.commit()
                return True

            return repository.retry_on_conflict(db, attempt)

    async def _heartbeat(self, project_id: str, step: Step, run_id: str) -> None:
        while True:
            await asyncio.sleep(self.config.pipeline.heartbeat_interval_s)
            try:
                if not self._touch_lease(project_id, step, run_id):
                    return
            except Exception:  # noqa: BLE001
                logger.exception("heartbeat for run %s of step %s failed", run_id, int(step))

    def _cancel_requested(self, project_id: str, step: Step, run_id: str) -> bool:
        with self.session_factory() as db:
            project = repository.get_project(db, project_id)
            if project is None:
                return True
            entry = repository.step_state(project, step)
        return bool(entry.get("cancel_requested")) or entry.get("run_id") != run_id

    async def _execute_single(self, project_id: str, step: Step, run_id: str, token: CancelToken) -> dict[str, Any]:
        timeout = (
            self.config.pipeline.compose_timeout_s if step == Step.COMPOSE else self.config.pipeline.step_timeout_s
        )
        try:
            fields = await self._run_cancellable(self._step_body(project_id, step), token, timeout)
        except StepCancelled:
            return self._settle(
                project_id, step, run_id, state=StepState.CANCELLED, error="cancelled by user", refund_all=True
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("step %s of %s failed", int(step), project_id)
            return self._settle(
                project_id,
                step,
                run_id,
                state=StepState.FAILED,
                error=str(exc) or exc.__class__.__name__,
                refund_all=True,
            )
        return self._settle(project_id, step, run_id, state=StepState.COMPLETED, fields=fields)

    async def _run_cancellable(self, body, token: CancelToken, timeout: float) -> dict[str, Any]:
        work = asyncio.ensure_future(body)
        watcher = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({work, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if work in done:
                return work.result()
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            if watcher in done:
                raise StepCancelled("cancelled by user")
            raise TimeoutFailure(f"timed out after {timeout}s")
        finally:
            watcher.cancel()

    async def _step_body(self, project_id: str, step: Step) -> dict[str, Any]:
        with self.session_factory() as db:
            project = repository.get_project(db, project_id)
            if project is None:
                raise PipelineError(f"project not found: {project_id}")
            input_prompt = project.input_prompt
            refined_prompt = project.refined_prompt or ""
            research = repository.project_field(project, "research_results")
            selected = repository.project_field(project, "selected_insights")
            options = repository.project_field(project, "options")
            chosen = repository.project_field(project, "chosen_concept")
            images = repository.project_field(project, "uploaded_images")
            voiced = [
                (row.item_index, row.url, repository.sub_job_payload(row))
                for row in repository.list_sub_jobs(db, project_id, Step.SPEECH)
            ]

        if step == Step.REFINE:
            result = await self.adapters.refine_prompt(input_prompt)
            return {"refined_prompt": result.refined_prompt, "prompt_improvements": result.improvements}

        if step == Step.RESEARCH:
            results = await self.adapters.research(refined_prompt)
            return {"research_results": results, "selected_insights": []}

        if step == Step.CONCEPT:
            chosen_ids = set(selected)
            insights = [
                str(item.get("content", ""))
                for item in research
                if not chosen_ids or str(item.get("id")) in chosen_ids
            ]
            concepts = await self.adapters.concepts(refined_prompt, insights[:12], options)
            return {"concepts": concepts}

        if step == Step.SCRIPT:
            if not chosen:
                raise PipelineError("no concept has been chosen")
            scripts = await self.adapters.scripts(chosen, refined_prompt, images)
            return {"video_scripts": scripts}

        clips = [
            ComposeClip(
                index=index,
                video_url=url or str(payload.get("video_url") or ""),
                audio_url=payload.get("audio_url"),
                subtitle_cues=list(payload.get("subtitle_cues") or []),
            )
            for index, url, payload in voiced
        ]
        result = await self.composer_factory().compose(clips, label=project_id)
        return {"final_artifact_url": result.artifact_url, "final_duration": result.duration_seconds}

    async def _execute_fanout(
        self,
        project_id: str,
        step: Step,
        run_id: str,
        user_id: str,
        token: CancelToken,
    ) -> dict[str, Any]:
        with self.session_factory() as db:
            project = repository.get_project(db, project_id)
            scripts = repository.project_field(project, "video_scripts")
            images = repository.project_field(project, "uploaded_images")
            items = [
                FanOutItem(index=row.item_index, payload=repository.sub_job_payload(row))
                for row in repository.list_sub_jobs(db, project_id, step)
                if row.run_id == run_id and row.status != SubJobStatus.COMPLETED.value
            ]

        worker = self._video_worker(scripts, images) if step == Step.VIDEO else self._speech_worker(scripts)
        hooks = _SubJobHooks(self, project_id=project_id, step=step, run_id=run_id, user_id=user_id)
        try:
            report = await self.coordinator.run(items, worker, hooks=hooks, cancel_token=token)
        except Exception as exc:  # noqa: BLE001
            logger.exception("fan-out of step %s for %s aborted", int(step), project_id)
            error = str(exc) or exc.__class__.__name__
            self._fail_unsettled_units(project_id, step, run_id, error)
            return self._settle(project_id, step, run_id, state=StepState.FAILED, error=error, refund_all=True)
        self._fail_unsettled_units(project_id, step, run_id, "unit did not settle")

        with self.session_factory() as db:
            rows = repository.list_sub_jobs(db, project_id, step)
            statuses = [(row.item_index, row.status, row.error) for row in rows]
        total = len(statuses)
        completed = sum(1 for _, status, _ in statuses if status == SubJobStatus.COMPLETED.value)
        counts = {"total": total, "completed": completed, "failed": total - completed}
        logger.info(
            "step %s of %s: run %s settled %s units, step has %s/%s completed",
            int(step),
            project_id,
            run_id,
            report.total,
            completed,
            total,
        )

        if token.is_cancelled():
            return self._settle(
                project_id,
                step,
                run_id,
                state=StepState.CANCELLED,
                error="cancelled by user",
                counts=counts,
                refund_all=True,
            )
        outcome = outcome_for(completed, total)
        if outcome == FanOutOutcome.ALL_SUCCEEDED:
            return self._settle(project_id, step, run_id, state=StepState.COMPLETED, counts=counts, refund_all=True)
        if outcome == FanOutOutcome.PARTIAL:
            return self._settle(
                project_id,
                step,
                run_id,
                state=StepState.PARTIAL,
                error=f"{total - completed} of {total} units failed",
                counts=counts,
                refund_all=True,
            )
        first_error = next((error for _, _, error in statuses if error), "every unit failed")
        return self._settle(
            project_id, step, run_id, state=StepState.FAILED, error=first_error, counts=counts, refund_all=True
        )

    def _fail_unsettled_units(self, project_id: str, step: Step, run_id: str, error: str) -> None:
        with self.session_factory() as db:
            stuck = [
                row.item_index
                for row in repository.list_sub_jobs(db, project_id, step)
                if row.run_id == run_id
                and row.status in (SubJobStatus.PENDING.value, SubJobStatus.PROCESSING.value)
            ]
            for index in stuck:
                repository.patch_sub_job(
                    db, project_id, step, index, run_id=run_id, status=SubJobStatus.FAILED.value, error=error
                )
                db.commit()
        if stuck:
            logger.warning("step %s of %s: units %s never settled: %s", int(step), project_id, stuck, error)

    def _video_worker(self, scripts: list[dict[str, Any]], images: list[str]):
        by_index = {script.get("video_index"): script for script in scripts}

        async def work(payload: dict[str, Any]) -> UnitOutput:
            script = by_index.get(payload.get("script_index"))
            if script is None:
                raise PipelineError(f"script {payload.get('script_index')} no longer exists")
            result = await self.adapters.synthesize_video(script, images)
            return UnitOutput(
                url=result.url,
                payload={"duration": result.duration, "operation_id": result.operation_id},
            )

        return work

    def _speech_worker(self, scripts: list[dict[str, Any]]):
        by_index = {script.get("video_index"): script for script in scripts}

        async def work(payload: dict[str, Any]) -> UnitOutput:
            script = by_index.get(payload.get("script_index"))
            narration = str((script or {}).get("narration") or "").strip()
            if not narration:
                raise PipelineError(f"clip {payload.get('clip_index')} has no narration")
            duration = float(payload.get("duration") or self.config.video.clip_seconds)
            result = await self.adapters.synthesize_speech(narration, duration)
            return UnitOutput(
                url=str(payload.get("video_url") or ""),
                payload={
                    "audio_url": result.audio_url,
                    "audio_duration": result.audio_duration,
                    "subtitle_cues": result.subtitle_cues,
                    "subtitle_url": result.subtitle_url,
                },
            )

        return work

    def _settle(
        self,
        project_id: str,
        step: Step,
        run_id: str,
        *,
        state: StepState,
        fields: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        counts: Optional[dict[str, int]] = None,
        refund_all: bool = False,
    ) -> dict[str, Any]:
        """Record the run's outcome, refunds included, in one guarded write."""
        with self.session_factory() as db:

            def attempt() -> dict[str, Any]:
                project = repository.get_project(db, project_id, fresh=True)
                if project is None:
                    logger.warning("project %s deleted before step %s settled", project_id, int(step))
                    return {"state": state.value, "error": error}

                if refund_all:
                    ledger.refund(
                        db,
                        user_id=project.user_id,
                        project_id=project_id,
                        step_id=int(step),
                        run_id=run_id,
                        item_key=FLAT_ITEM_KEY,
                        reason=error,
                    )
                    for row in repository.list_sub_jobs(db, project_id, step):
                        if row.run_id == run_id and row.status != SubJobStatus.COMPLETED.value:
                            ledger.refund(
                                db,
                                user_id=project.user_id,
                                project_id=project_id,
                                step_id=int(step),
                                run_id=run_id,
                                item_key=str(row.item_index),
                                reason=error,
                            )

                states = repository.step_states(project)
                entry = dict(states.get(int(step), {}))
                if entry.get("run_id") != run_id:
                    logger.warning("run %s of step %s was superseded; outputs discarded", run_id, int(step))
                    db.commit()
                    return entry

                entry.update(
                    state=state.value,
                    finished_at=repository.utc_now_iso(),
                    cancel_requested=False,
                    error=error,
                    **(counts or {}),
                )
                states[int(step)] = entry
                values = dict(fields or {})
                values["step_status"] = states
                values["status"] = _status_after(step, state)
                if state in (StepState.COMPLETED, StepState.PARTIAL) and project.current_step == int(step):
                    values["current_step"] = int(step) + 1
                repository.patch_project(db, project_id, expected_version=project.version, **values)

                message = f"{STEP_NAMES[step]} {state.value}"
                if error:
                    message = f"{message}: {error}"
                repository.append_event(db, project_id, state.value, message, step=step)
                db.commit()
                return entry

            entry = repository.retry_on_conflict(db, attempt)
        logger.info("step %s of %s settled as %s (run %s)", int(step), project_id, state.value, run_id)
        return entry

    def request_cancel(self, project_id: str, step: Any, *, user_id: str) -> dict[str, Any]:
        step = coerce_step(step)
        with self.session_factory() as db:
            project = self._owned(db, project_id, user_id)
            if repository.step_state(project, step).get("state") != StepState.RUNNING.value:
                raise PreconditionFailed(f"step {int(step)} is not running")
            entry = repository.update_step_state(db, project_id, step, cancel_requested=True)
            repository.append_event(db, project_id, "cancel_requested", f"{STEP_NAMES[step]} cancel requested", step=step)
            db.commit()
        return entry

    def set_script_approval(
        self,
        project_id: str,
        *,
        user_id: str,
        approved: dict[int, bool],
        approve_all: bool = False,
    ) -> list[dict[str, Any]]:
        with self.session_factory() as db:

            def attempt() -> list[dict[str, Any]]:
                project = self._owned(db, project_id, user_id)
                if repository.running_step(project) is not None:
                    raise AlreadyRunning("scripts cannot change while a step is running")
                scripts = repository.project_field(project, "video_scripts")
                if not scripts:
                    raise PreconditionFailed("there are no scripts to approve")
                known = {int(script.get("video_index", -1)) for script in scripts}
                unknown = sorted(set(int(key) for key in approved) - known)
                if unknown:
                    raise PreconditionFailed(f"unknown script indices: {unknown}")
                for script in scripts:
                    idx = int(script.get("video_index", -1))
                    if approve_all:
                        script["approved"] = True
                    elif idx in approved:
                        script["approved"] = bool(approved[idx])
                repository.patch_project(db, project_id, expected_version=project.version, video_scripts=scripts)
                db.commit()
                return scripts

            return repository.retry_on_conflict(db, attempt)

    def recover_running_steps(self) -> list[tuple[str, int, str, float]]:
        """Steps left running by a previous process, as (project, step, run, delay_s).

        A run whose worker still heartbeats is only re-dispatched once its
        lease would have lapsed; the re-dispatched task then skips it if the
        worker is still alive.
        """
        recovered: list[tuple[str, int, str, float]] = []
        with self.session_factory() as db:
            for project_id, step, run_id in repository.list_running_steps(db):
                project = repository.get_project(db, project_id)
                delay = self._lease_remaining(repository.step_state(project, step))
                recovered.append((project_id, step, run_id, delay))
                repository.append_event(
                    db, project_id, StepState.RUNNING.value, "resumed after restart", step=step
                )
            db.commit()
        return recovered


def build_step_machine(
    config: Optional[AppConfig] = None,
    *,
    dispatch: Optional[Dispatcher] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> StepMachine:
    config = config or load_config()
    store = LocalObjectStore(PATHS.artifacts_root, config.storage.public_base_url)

    def composer_factory() -> MediaComposer:
        if not ffmpeg_available():
            raise PipelineError("ffmpeg or ffprobe is not available")
        return MediaComposer(
            store,
            workspace_root=PATHS.workspaces_root,
            keep_workspace=config.pipeline.keep_compose_workspace,
            subtitle_style=SubtitleStyle(
                font=config.pipeline.subtitle_font,
                font_size=config.pipeline.subtitle_font_size,
            ),
            download_timeout_s=config.storage.download_timeout_s,
        )

    return StepMachine(
        session_factory=session_factory,
        config=config,
        adapters=ReelsAdapters(config, store),
        composer_factory=composer_factory,
        dispatch=dispatch,
    )
