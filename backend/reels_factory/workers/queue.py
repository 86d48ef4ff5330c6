"""Huey queue definitions and enqueue helpers."""

from __future__ import annotations

import asyncio
import logging

from huey import SqliteHuey

from reels_factory.core.settings import PATHS

logger = logging.getLogger(__name__)

huey = SqliteHuey("reels_factory", filename=str(PATHS.queue_path))


@huey.task(retries=0)
def run_step_task(project_id: str, step: int, run_id: str) -> None:
    from reels_factory.services.pipeline import build_step_machine

    machine = build_step_machine(dispatch=enqueue_step)
    entry = asyncio.run(machine.execute_step(project_id, step, run_id))
    logger.info("background step %s of %s finished as %s", step, project_id, entry.get("state"))


def enqueue_step(project_id: str, step: int, run_id: str, delay: float = 0.0) -> None:
    if delay > 0:
        run_step_task.schedule(args=(project_id, step, run_id), delay=delay)
    else:
        run_step_task(project_id, step, run_id)
