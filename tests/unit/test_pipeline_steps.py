from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from reels_factory.core.constants import PIPELINE_DONE, ProjectStatus, Step, StepState, SubJobStatus
from reels_factory.services import ledger, repository
from reels_factory.services.generative import AdapterFailure
from reels_factory.services.pipeline import (
    AlreadyRunning,
    NotProjectOwner,
    PreconditionFailed,
    StepMachine,
    coerce_step,
)


async def _through_scripts(machine: StepMachine, project_id: str, user_id: str = "u1") -> None:
    await machine.advance(project_id, Step.REFINE, user_id=user_id)
    await machine.advance(project_id, Step.RESEARCH, user_id=user_id)
    await machine.advance(project_id, Step.CONCEPT, user_id=user_id)
    await machine.advance(project_id, Step.SCRIPT, user_id=user_id, inputs={"concept_id": "concept-2"})
    machine.set_script_approval(project_id, user_id=user_id, approved={}, approve_all=True)


def _project(session_factory, project_id: str = "p1"):
    with session_factory() as db:
        project = repository.get_project(db, project_id)
        db.expunge(project)
        return project


def _balance(session_factory, user_id: str = "u1") -> int:
    with session_factory() as db:
        return ledger.balance(db, user_id)


def _spent(session_factory, project_id: str = "p1") -> int:
    with session_factory() as db:
        return ledger.net_spent(db, project_id)


def _units(session_factory, step: int, project_id: str = "p1") -> list[tuple[int, str]]:
    with session_factory() as db:
        return [(row.item_index, row.status) for row in repository.list_sub_jobs(db, project_id, step)]


def test_coerce_step_rejects_unknown_ids() -> None:
    assert coerce_step("4") == Step.VIDEO
    with pytest.raises(PreconditionFailed):
        coerce_step(9)
    with pytest.raises(PreconditionFailed):
        coerce_step("compose")


@pytest.mark.anyio
async def test_full_run_reaches_final_artifact(machine, make_project, session_factory, fake_composer) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)

    video = await machine.advance(project_id, Step.VIDEO, user_id="u1")
    assert video.state == StepState.COMPLETED.value
    speech = await machine.advance(project_id, Step.SPEECH, user_id="u1")
    assert speech.state == StepState.COMPLETED.value
    final = await machine.advance(project_id, Step.COMPOSE, user_id="u1")
    assert final.state == StepState.COMPLETED.value

    project = _project(session_factory)
    assert project.current_step == PIPELINE_DONE
    assert project.status == ProjectStatus.COMPLETED.value
    assert project.final_artifact_url.endswith(f"/final/{project_id}.mp4")
    assert project.final_duration == 24.0

    clips = fake_composer.calls[0]
    assert [clip.index for clip in clips] == [0, 1, 2]
    assert clips[1].video_url == "https://cdn.test/clip-1.mp4"
    assert clips[1].audio_url == "https://cdn.test/narration-1.mp3"

    # 1 + 2 + 1 + 3 + 3 * 50 + 3 * 2 + 10
    assert _spent(session_factory) == 173
    assert _balance(session_factory) == 1000 - 173


@pytest.mark.anyio
async def test_step_ahead_of_pointer_is_rejected_without_charge(machine, make_project, session_factory) -> None:
    project_id = make_project()
    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.RESEARCH, user_id="u1")
    assert _balance(session_factory) == 1000
    assert repository.step_state(_project(session_factory), Step.RESEARCH)["state"] == StepState.NOT_STARTED.value


@pytest.mark.anyio
async def test_other_users_cannot_advance(machine, make_project) -> None:
    project_id = make_project()
    with pytest.raises(NotProjectOwner):
        await machine.advance(project_id, Step.REFINE, user_id="intruder")


@pytest.mark.anyio
async def test_insufficient_credits_leaves_step_untouched(machine, make_project, session_factory) -> None:
    project_id = make_project(credits=0)
    with pytest.raises(ledger.InsufficientCredits):
        await machine.advance(project_id, Step.REFINE, user_id="u1")

    project = _project(session_factory)
    assert project.status == ProjectStatus.DRAFT.value
    assert repository.running_step(project) is None
    assert _spent(session_factory) == 0


@pytest.mark.anyio
async def test_failed_step_is_refunded_and_pointer_stays(
    machine, make_project, session_factory, fake_adapters
) -> None:
    project_id = make_project()
    fake_adapters.refine_error = AdapterFailure("llm unavailable")

    accepted = await machine.advance(project_id, Step.REFINE, user_id="u1")

    assert accepted.state == StepState.FAILED.value
    assert "llm unavailable" in accepted.error
    project = _project(session_factory)
    assert project.current_step == 0
    assert repository.step_state(project, Step.REFINE)["error"] == "llm unavailable"
    assert _spent(session_factory) == 0
    assert _balance(session_factory) == 1000


@pytest.mark.anyio
async def test_rerunning_an_earlier_step_keeps_the_pointer(machine, make_project, session_factory) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    assert _project(session_factory).current_step == Step.VIDEO

    accepted = await machine.advance(project_id, Step.REFINE, user_id="u1", inputs={"prompt": "A solar charger"})

    assert accepted.state == StepState.COMPLETED.value
    project = _project(session_factory)
    assert project.current_step == Step.VIDEO
    assert project.refined_prompt == "refined: A solar charger"


@pytest.mark.anyio
async def test_selected_insights_feed_concepts_and_reset_on_research(
    machine, make_project, session_factory, fake_adapters
) -> None:
    project_id = make_project()
    await machine.advance(project_id, Step.REFINE, user_id="u1")
    await machine.advance(project_id, Step.RESEARCH, user_id="u1")

    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.CONCEPT, user_id="u1", inputs={"selected_insights": ["insight-9"]})

    await machine.advance(project_id, Step.CONCEPT, user_id="u1", inputs={"selected_insights": ["insight-2"]})
    assert fake_adapters.concept_insights == ["Cables tangle in bags"]
    assert repository.project_field(_project(session_factory), "selected_insights") == ["insight-2"]

    await machine.advance(project_id, Step.RESEARCH, user_id="u1")
    assert repository.project_field(_project(session_factory), "selected_insights") == []


@pytest.mark.anyio
async def test_script_step_requires_a_known_concept(machine, make_project) -> None:
    project_id = make_project()
    await machine.advance(project_id, Step.REFINE, user_id="u1")
    await machine.advance(project_id, Step.RESEARCH, user_id="u1")
    await machine.advance(project_id, Step.CONCEPT, user_id="u1")

    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.SCRIPT, user_id="u1")
    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.SCRIPT, user_id="u1", inputs={"concept_id": "concept-7"})


@pytest.mark.anyio
async def test_video_requires_approved_scripts(machine, make_project, session_factory) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    machine.set_script_approval(project_id, user_id="u1", approved={0: False, 1: False, 2: False})
    before = _balance(session_factory)

    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.VIDEO, user_id="u1")
    assert _balance(session_factory) == before

    with pytest.raises(PreconditionFailed):
        machine.set_script_approval(project_id, user_id="u1", approved={7: True})


@pytest.mark.anyio
async def test_only_approved_scripts_become_clips(machine, make_project, session_factory, fake_adapters) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    machine.set_script_approval(project_id, user_id="u1", approved={1: False})

    await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert sorted(fake_adapters.video_calls) == [0, 2]
    with pytest.raises(PreconditionFailed):
        machine.set_script_approval(project_id, user_id="u1", approved={5: True})


@pytest.mark.anyio
async def test_partial_video_refunds_failed_clips_and_advances(
    machine, make_project, session_factory, fake_adapters
) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    spent_before = _spent(session_factory)
    fake_adapters.video_failures = {1}

    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert accepted.state == StepState.PARTIAL.value
    project = _project(session_factory)
    assert project.status == ProjectStatus.PARTIAL.value
    assert project.current_step == Step.SPEECH
    entry = repository.step_state(project, Step.VIDEO)
    assert (entry["total"], entry["completed"], entry["failed"]) == (3, 2, 1)
    assert _units(session_factory, Step.VIDEO) == [
        (0, SubJobStatus.COMPLETED.value),
        (1, SubJobStatus.FAILED.value),
        (2, SubJobStatus.COMPLETED.value),
    ]
    assert _spent(session_factory) - spent_before == 100


@pytest.mark.anyio
async def test_one_failed_clip_of_five_is_refunded_once(
    machine, make_project, session_factory, fake_adapters
) -> None:
    fake_adapters.script_count = 5
    project_id = make_project()
    await _through_scripts(machine, project_id)
    fake_adapters.video_failures = {3}
    spent_before = _spent(session_factory)

    video = await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert video.state == StepState.PARTIAL.value
    assert _spent(session_factory) - spent_before == 4 * 50
    with session_factory() as db:
        refunds = [
            entry
            for entry in ledger.list_entries(db, project_id)
            if entry.step_id == Step.VIDEO and entry.direction == "refund"
        ]
    assert [(entry.item_key, entry.amount) for entry in refunds] == [("3", 50)]

    speech = await machine.advance(project_id, Step.SPEECH, user_id="u1")

    assert speech.state == StepState.COMPLETED.value
    assert [index for index, _ in _units(session_factory, Step.SPEECH)] == [0, 1, 2, 3]
    assert _spent(session_factory) - spent_before == 4 * 50 + 4 * 2


@pytest.mark.anyio
async def test_retry_failed_reruns_only_failed_clips(machine, make_project, session_factory, fake_adapters) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    fake_adapters.video_failures = {1}
    await machine.advance(project_id, Step.VIDEO, user_id="u1")
    spent_before = _spent(session_factory)
    fake_adapters.video_failures = set()
    fake_adapters.video_calls.clear()

    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1", inputs={"retry_failed": True})

    assert accepted.state == StepState.COMPLETED.value
    assert fake_adapters.video_calls == [1]
    assert _spent(session_factory) - spent_before == 50
    assert all(status == SubJobStatus.COMPLETED.value for _, status in _units(session_factory, Step.VIDEO))
    project = _project(session_factory)
    assert project.current_step == Step.SPEECH
    assert project.status == ProjectStatus.DRAFT.value

    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.VIDEO, user_id="u1", inputs={"retry_failed": True})


@pytest.mark.anyio
async def test_all_clips_failing_fails_the_step(machine, make_project, session_factory, fake_adapters) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    spent_before = _spent(session_factory)
    fake_adapters.video_failures = {0, 1, 2}

    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert accepted.state == StepState.FAILED.value
    assert "rejected" in accepted.error
    project = _project(session_factory)
    assert project.status == ProjectStatus.FAILED.value
    assert project.current_step == Step.VIDEO
    assert _spent(session_factory) == spent_before


@pytest.mark.anyio
async def test_compose_requires_every_voiced_clip(machine, make_project, fake_adapters) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    await machine.advance(project_id, Step.VIDEO, user_id="u1")
    fake_adapters.speech_failures = {"narration 2"}
    speech = await machine.advance(project_id, Step.SPEECH, user_id="u1")
    assert speech.state == StepState.PARTIAL.value

    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.COMPOSE, user_id="u1")


@pytest.mark.anyio
async def test_running_step_blocks_other_starts(machine, make_project, session_factory) -> None:
    project_id = make_project()
    with session_factory() as db:
        repository.update_step_state(db, project_id, Step.REFINE, state=StepState.RUNNING.value, run_id="r-1")
        db.commit()

    with pytest.raises(AlreadyRunning):
        await machine.advance(project_id, Step.REFINE, user_id="u1")
    assert _balance(session_factory) == 1000


@pytest.mark.anyio
async def test_stale_run_is_not_executed(machine, make_project, session_factory, fake_adapters) -> None:
    project_id = make_project()
    fake_adapters.refine_error = AssertionError("must not run")

    entry = await machine.execute_step(project_id, Step.REFINE, "unknown-run")

    assert entry["state"] == StepState.NOT_STARTED.value


@pytest.mark.anyio
async def test_cancel_stops_in_flight_clips_and_refunds(
    machine, make_project, session_factory, fake_adapters
) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    spent_before = _spent(session_factory)
    fake_adapters.video_delay = 30

    task = asyncio.create_task(machine.advance(project_id, Step.VIDEO, user_id="u1"))
    for _ in range(100):
        await asyncio.sleep(0.02)
        if any(status == SubJobStatus.PROCESSING.value for _, status in _units(session_factory, Step.VIDEO)):
            break
    machine.request_cancel(project_id, Step.VIDEO, user_id="u1")
    accepted = await asyncio.wait_for(task, timeout=10)

    assert accepted.state == StepState.CANCELLED.value
    project = _project(session_factory)
    assert project.current_step == Step.VIDEO
    assert repository.running_step(project) is None
    assert _spent(session_factory) == spent_before


@pytest.mark.anyio
async def test_cancel_requires_a_running_step(machine, make_project) -> None:
    project_id = make_project()
    with pytest.raises(PreconditionFailed):
        machine.request_cancel(project_id, Step.REFINE, user_id="u1")


@pytest.mark.anyio
async def test_background_steps_are_dispatched(
    session_factory, app_config, fake_adapters, fake_composer, make_project
) -> None:
    dispatched: list[tuple[str, int, str]] = []
    machine = StepMachine(
        session_factory=session_factory,
        config=app_config,
        adapters=fake_adapters,
        composer_factory=lambda: fake_composer,
        dispatch=lambda project_id, step, run_id: dispatched.append((project_id, step, run_id)),
    )
    project_id = make_project()
    await _through_scripts(machine, project_id)

    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert accepted.background is True
    assert accepted.state == StepState.RUNNING.value
    assert dispatched == [(project_id, int(Step.VIDEO), accepted.run_id)]
    assert fake_adapters.video_calls == []
    assert machine.recover_running_steps() == [(project_id, int(Step.VIDEO), accepted.run_id, 0.0)]

    entry = await machine.execute_step(project_id, Step.VIDEO, accepted.run_id)
    assert entry["state"] == StepState.COMPLETED.value
    assert _project(session_factory).current_step == Step.SPEECH


@pytest.mark.anyio
async def test_dispatch_failure_settles_and_refunds(
    session_factory, app_config, fake_adapters, fake_composer, make_project
) -> None:
    def broken_dispatch(project_id: str, step: int, run_id: str) -> None:
        raise ConnectionError("queue offline")

    machine = StepMachine(
        session_factory=session_factory,
        config=app_config,
        adapters=fake_adapters,
        composer_factory=lambda: fake_composer,
        dispatch=broken_dispatch,
    )
    project_id = make_project()
    await _through_scripts(machine, project_id)
    spent_before = _spent(session_factory)

    with pytest.raises(ConnectionError):
        await machine.advance(project_id, Step.VIDEO, user_id="u1")

    project = _project(session_factory)
    assert repository.step_state(project, Step.VIDEO)["state"] == StepState.FAILED.value
    assert _spent(session_factory) == spent_before


def _background_machine(session_factory, app_config, fake_adapters, fake_composer) -> StepMachine:
    return StepMachine(
        session_factory=session_factory,
        config=app_config,
        adapters=fake_adapters,
        composer_factory=lambda: fake_composer,
        dispatch=lambda project_id, step, run_id: None,
    )


@pytest.mark.anyio
async def test_live_worker_keeps_its_run(
    session_factory, app_config, fake_adapters, fake_composer, make_project
) -> None:
    machine = _background_machine(session_factory, app_config, fake_adapters, fake_composer)
    project_id = make_project()
    await _through_scripts(machine, project_id)
    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")
    with session_factory() as db:
        repository.update_step_state(db, project_id, Step.VIDEO, heartbeat_at=repository.utc_now_iso())
        db.commit()

    entry = await machine.execute_step(project_id, Step.VIDEO, accepted.run_id)

    assert entry["state"] == StepState.RUNNING.value
    assert fake_adapters.video_calls == []
    [(_, step, run_id, delay)] = machine.recover_running_steps()
    assert (step, run_id) == (int(Step.VIDEO), accepted.run_id)
    assert 0 < delay <= machine.lease_s


@pytest.mark.anyio
async def test_lapsed_heartbeat_lets_a_new_worker_take_over(
    session_factory, app_config, fake_adapters, fake_composer, make_project
) -> None:
    machine = _background_machine(session_factory, app_config, fake_adapters, fake_composer)
    project_id = make_project()
    await _through_scripts(machine, project_id)
    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")
    lapsed = datetime.now(timezone.utc) - timedelta(seconds=machine.lease_s + 60)
    with session_factory() as db:
        repository.update_step_state(db, project_id, Step.VIDEO, heartbeat_at=lapsed.replace(microsecond=0).isoformat())
        db.commit()

    assert machine.recover_running_steps() == [(project_id, int(Step.VIDEO), accepted.run_id, 0.0)]
    entry = await machine.execute_step(project_id, Step.VIDEO, accepted.run_id)

    assert entry["state"] == StepState.COMPLETED.value
    assert sorted(fake_adapters.video_calls) == [0, 1, 2]


@pytest.mark.anyio
async def test_unrecorded_unit_start_fails_only_that_unit(
    machine, make_project, session_factory, monkeypatch
) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    spent_before = _spent(session_factory)
    patch_sub_job = repository.patch_sub_job

    def flaky_patch(db, pid, step, index, **kwargs):
        if index == 1 and kwargs.get("status") == SubJobStatus.PROCESSING.value:
            raise RuntimeError("database is locked")
        return patch_sub_job(db, pid, step, index, **kwargs)

    monkeypatch.setattr(repository, "patch_sub_job", flaky_patch)

    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert accepted.state == StepState.PARTIAL.value
    assert _units(session_factory, Step.VIDEO)[1] == (1, SubJobStatus.FAILED.value)
    assert repository.running_step(_project(session_factory)) is None
    assert _spent(session_factory) - spent_before == 100


@pytest.mark.anyio
async def test_aborted_fanout_fails_the_step_and_refunds(
    machine, make_project, session_factory, monkeypatch
) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    spent_before = _spent(session_factory)

    async def broken_run(*args, **kwargs):
        raise RuntimeError("event loop closed")

    monkeypatch.setattr(machine.coordinator, "run", broken_run)

    accepted = await machine.advance(project_id, Step.VIDEO, user_id="u1")

    assert accepted.state == StepState.FAILED.value
    assert accepted.error == "event loop closed"
    assert {status for _, status in _units(session_factory, Step.VIDEO)} == {SubJobStatus.FAILED.value}
    project = _project(session_factory)
    assert repository.running_step(project) is None
    assert project.current_step == Step.VIDEO
    assert _spent(session_factory) == spent_before


@pytest.mark.anyio
async def test_regenerating_clips_invalidates_speech_and_compose(
    machine, make_project, session_factory, fake_adapters, fake_composer
) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    for step in (Step.VIDEO, Step.SPEECH, Step.COMPOSE):
        await machine.advance(project_id, step, user_id="u1")
    fake_adapters.video_prefix = "v2-"

    await machine.advance(project_id, Step.VIDEO, user_id="u1")

    project = _project(session_factory)
    assert repository.step_state(project, Step.SPEECH)["state"] == StepState.NOT_STARTED.value
    assert repository.step_state(project, Step.COMPOSE)["state"] == StepState.NOT_STARTED.value
    assert _units(session_factory, Step.SPEECH) == []
    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.COMPOSE, user_id="u1")

    await machine.advance(project_id, Step.SPEECH, user_id="u1")
    final = await machine.advance(project_id, Step.COMPOSE, user_id="u1")

    assert final.state == StepState.COMPLETED.value
    assert [clip.video_url for clip in fake_composer.calls[-1]] == [
        f"https://cdn.test/v2-clip-{idx}.mp4" for idx in range(3)
    ]


@pytest.mark.anyio
async def test_retried_clips_need_fresh_speech_before_compose(machine, make_project, fake_adapters) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    fake_adapters.video_failures = {1}
    await machine.advance(project_id, Step.VIDEO, user_id="u1")
    await machine.advance(project_id, Step.SPEECH, user_id="u1")
    fake_adapters.video_failures = set()
    await machine.advance(project_id, Step.VIDEO, user_id="u1", inputs={"retry_failed": True})

    with pytest.raises(PreconditionFailed):
        await machine.advance(project_id, Step.COMPOSE, user_id="u1")

    await machine.advance(project_id, Step.SPEECH, user_id="u1")
    final = await machine.advance(project_id, Step.COMPOSE, user_id="u1")
    assert final.state == StepState.COMPLETED.value


@pytest.mark.anyio
async def test_clips_reach_compose_in_script_order(
    machine, make_project, session_factory, fake_adapters, fake_composer
) -> None:
    project_id = make_project()
    await _through_scripts(machine, project_id)
    fake_adapters.video_delays = {0: 0.3, 1: 0.15, 2: 0.0}

    await machine.advance(project_id, Step.VIDEO, user_id="u1")
    with session_factory() as db:
        finished = [
            event.message
            for event in repository.list_events(db, project_id)
            if event.step == Step.VIDEO and event.message.startswith("unit ")
        ]
    assert finished == ["unit 2 completed", "unit 1 completed", "unit 0 completed"]

    await machine.advance(project_id, Step.SPEECH, user_id="u1")
    await machine.advance(project_id, Step.COMPOSE, user_id="u1")

    clips = fake_composer.calls[-1]
    assert [clip.index for clip in clips] == [0, 1, 2]
    assert [clip.video_url for clip in clips] == [f"https://cdn.test/clip-{idx}.mp4" for idx in range(3)]
    assert [clip.audio_url for clip in clips] == [f"https://cdn.test/narration-{idx}.mp3" for idx in range(3)]
