"""Concurrent fan-out of independent work units with per-unit settlement."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

from reels_factory.core.constants import SubJobStatus

logger = logging.getLogger(__name__)

Worker = Callable[[Any], Awaitable[Any]]


class FanOutOutcome(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"


@dataclass(frozen=True)
class FanOutItem:
    index: int
    payload: Any


@dataclass
class FanOutItemResult:
    index: int
    status: SubJobStatus
    output: Any = None
    error: Optional[str] = None


@dataclass
class FanOutReport:
    items: list[FanOutItemResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def completed(self) -> int:
        return sum(1 for item in self.items if item.status == SubJobStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return self.total - self.completed

    @property
    def outcome(self) -> FanOutOutcome:
        return outcome_for(self.completed, self.total)


def outcome_for(completed: int, total: int) -> FanOutOutcome:
    if completed == total:
        return FanOutOutcome.ALL_SUCCEEDED
    if completed == 0:
        return FanOutOutcome.ALL_FAILED
    return FanOutOutcome.PARTIAL


class FanOutHooks:
    """Persistence callbacks invoked as each unit changes state.

    Subclasses override what they need; the defaults do nothing.
    """

    async def on_processing(self, index: int) -> None:
        return None

    async def on_completed(self, index: int, output: Any) -> None:
        return None

    async def on_failed(self, index: int, error: str) -> None:
        return None


class CancelToken:
    """Cancellation flag, set locally or observed through ``check``."""

    def __init__(self, check: Optional[Callable[[], bool]] = None, poll_interval_s: float = 2.0) -> None:
        self._check = check
        self._cancelled = False
        self.poll_interval_s = poll_interval_s

    def cancel(self) -> None:
        self._cancelled = True

    def is_cancelled(self) -> bool:
        if not self._cancelled and self._check is not None and self._check():
            self._cancelled = True
        return self._cancelled

    async def wait(self) -> None:
        while not self.is_cancelled():
            await asyncio.sleep(self.poll_interval_s)


class FanOutCoordinator:
    """Runs every unit concurrently and settles each one independently.

    A unit that raises or exceeds ``item_timeout_s`` is recorded as failed
    through ``hooks.on_failed``; the other units keep running. The report
    is returned once every unit has settled.
    """

    def __init__(self, *, item_timeout_s: float) -> None:
        self.item_timeout_s = item_timeout_s

    async def run(
        self,
        items: Sequence[FanOutItem],
        worker: Worker,
        *,
        hooks: Optional[FanOutHooks] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> FanOutReport:
        hooks = hooks or FanOutHooks()
        inflight: dict[int, asyncio.Task] = {}
        watcher: Optional[asyncio.Task] = None
        if cancel_token is not None:
            watcher = asyncio.create_task(self._watch(cancel_token, inflight))

        try:
            results = await asyncio.gather(
                *(self._run_one(item, worker, hooks, cancel_token, inflight) for item in items)
            )
        finally:
            if watcher is not None:
                watcher.cancel()

        report = FanOutReport(items=sorted(results, key=lambda result: result.index))
        logger.info(
            "fan-out settled: %s/%s completed (%s)",
            report.completed,
            report.total,
            report.outcome.value,
        )
        return report

    async def _watch(self, token: CancelToken, inflight: dict[int, asyncio.Task]) -> None:
        await token.wait()
        logger.info("cancellation requested, stopping %s in-flight units", len(inflight))
        for task in list(inflight.values()):
            task.cancel()

    async def _run_one(
        self,
        item: FanOutItem,
        worker: Worker,
        hooks: FanOutHooks,
        cancel_token: Optional[CancelToken],
        inflight: dict[int, asyncio.Task],
    ) -> FanOutItemResult:
        if cancel_token is not None and cancel_token.is_cancelled():
            return await self._fail(item.index, "cancelled before start", hooks)

        try:
            await hooks.on_processing(item.index)
        except Exception as exc:  # noqa: BLE001
            logger.exception("recording start of unit %s failed", item.index)
            return await self._fail(item.index, f"failed to record start: {exc}", hooks)

        task = asyncio.ensure_future(worker(item.payload))
        inflight[item.index] = task
        try:
            output = await asyncio.wait_for(task, timeout=self.item_timeout_s)
        except asyncio.TimeoutError:
            return await self._fail(item.index, f"timed out after {self.item_timeout_s}s", hooks)
        except asyncio.CancelledError:
            if cancel_token is None or not cancel_token.is_cancelled():
                raise
            return await self._fail(item.index, "cancelled", hooks)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(item.index, str(exc) or exc.__class__.__name__, hooks)
        finally:
            inflight.pop(item.index, None)

        try:
            await hooks.on_completed(item.index, output)
        except Exception as exc:  # noqa: BLE001
            logger.exception("unit %s produced output but recording it failed", item.index)
            return await self._fail(item.index, f"failed to record result: {exc}", hooks)
        return FanOutItemResult(index=item.index, status=SubJobStatus.COMPLETED, output=output)

    async def _fail(self, index: int, error: str, hooks: FanOutHooks) -> FanOutItemResult:
        logger.warning("unit %s failed: %s", index, error)
        try:
            await hooks.on_failed(index, error)
        except Exception:  # noqa: BLE001
            logger.exception("recording failure of unit %s failed", index)
        return FanOutItemResult(index=index, status=SubJobStatus.FAILED, error=error)
