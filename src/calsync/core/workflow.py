"""In-process workflow engine.

Runs units of work as background asyncio tasks identified by an opaque run
id.  Failed attempts are retried with exponential backoff unless the error
is a :class:`~calsync.errors.PermanentError`; once a run reaches a terminal
state its ``on_complete`` callback receives the :class:`RunOutcome`.

Runs do not survive a process restart.  The fallback sweep re-enqueues
every mapping periodically, which covers runs lost to a crash.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

from calsync.core.logging import bind_run_context
from calsync.errors import PermanentError

logger = logging.getLogger(__name__)

RunStatus = Literal["succeeded", "failed"]


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    name: str
    status: RunStatus
    attempts: int
    result: Any = None
    error: str | None = None


WorkFn = Callable[[], Awaitable[Any]]
CompletionFn = Callable[[RunOutcome], Awaitable[None]]


class WorkflowEngine:
    """Fire-and-forget runner with bounded retries."""

    def __init__(self, *, max_attempts: int = 3, backoff_seconds: float = 2.0) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._tasks: dict[str, asyncio.Task[RunOutcome]] = {}

    @staticmethod
    def new_run_id() -> str:
        return uuid.uuid4().hex

    def start(
        self,
        name: str,
        work: WorkFn,
        *,
        run_id: str | None = None,
        on_complete: CompletionFn | None = None,
        retry: bool = True,
        context: dict[str, str] | None = None,
    ) -> str:
        """Schedule *work* and return its run id without waiting for it."""
        run_id = run_id or self.new_run_id()
        task = asyncio.create_task(
            self._run(run_id, name, work, on_complete, retry, context or {}),
            name=f"{name}:{run_id}",
        )
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))
        return run_id

    async def _run(
        self,
        run_id: str,
        name: str,
        work: WorkFn,
        on_complete: CompletionFn | None,
        retry: bool,
        context: dict[str, str],
    ) -> RunOutcome:
        bind_run_context(run_id=run_id, workflow=name, **context)
        max_attempts = self.max_attempts if retry else 1
        attempt = 0
        outcome: RunOutcome
        while True:
            attempt += 1
            try:
                result = await work()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                permanent = isinstance(exc, PermanentError)
                if permanent or attempt >= max_attempts:
                    logger.exception(
                        "Workflow %s run %s failed after %d attempt(s)", name, run_id, attempt
                    )
                    outcome = RunOutcome(
                        run_id=run_id,
                        name=name,
                        status="failed",
                        attempts=attempt,
                        error=str(exc) or type(exc).__name__,
                    )
                    break
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Workflow %s run %s attempt %d/%d failed: %s; retrying in %.1fs",
                    name,
                    run_id,
                    attempt,
                    max_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                continue
            outcome = RunOutcome(
                run_id=run_id, name=name, status="succeeded", attempts=attempt, result=result
            )
            break

        if on_complete is not None:
            try:
                await on_complete(outcome)
            except Exception:
                logger.exception("Completion handler for workflow %s run %s failed", name, run_id)
        return outcome

    async def wait(self, run_id: str) -> RunOutcome | None:
        """Wait for a run that is still active; returns None if it already finished."""
        task = self._tasks.get(run_id)
        if task is None:
            return None
        return await task

    async def drain(self) -> None:
        """Wait for every active run, including runs started while draining."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()

    @property
    def active_runs(self) -> list[str]:
        return list(self._tasks)
