"""Loop adapters — one inbound queue per execution loop.

Each adapter registers its loop with the Sandbox Controller, admits every
queued message through the pipeline and only then hands it to the loop's
handler.  Rejections never reach the handler and never stop the loop.  A
handler fault is logged and drops the loop's readiness; the loop then
reports again, and follows the readiness rounds the sandbox starts when
other loops' reports have gone stale.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable, Callable

from trustkernel.admission import AdmissionPipeline, AdmittedMessage
from trustkernel.errors import AdmissionError, LockTimeout
from trustkernel.sandbox.controller import SandboxController

logger = logging.getLogger(__name__)

Handler = Callable[[AdmittedMessage], Awaitable[None]]
RejectCallback = Callable[[AdmissionError, Any], Awaitable[None]]
ReadinessCheck = Callable[[], Awaitable[bool]]


class LoopKind(str, enum.Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    THIRD = "third"
    FORTH = "forth"
    EXTERNAL = "external"


class LoopAdapter:
    def __init__(
        self,
        kind: LoopKind | str,
        pipeline: AdmissionPipeline,
        sandbox: SandboxController,
        handler: Handler,
        *,
        on_reject: RejectCallback | None = None,
        readiness: ReadinessCheck | None = None,
        queue_size: int = 1000,
    ) -> None:
        self.loop_id = kind.value if isinstance(kind, LoopKind) else kind
        self._pipeline = pipeline
        self._sandbox = sandbox
        self._handler = handler
        self._on_reject = on_reject
        self._readiness = readiness
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        self._rounds_task: asyncio.Task | None = None
        self.handled = 0
        self.rejected = 0
        self.faults = 0

    def __repr__(self) -> str:
        return f"<LoopAdapter {self.loop_id} queued={self._queue.qsize()}>"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(self, raw: Any) -> bool:
        """Queue a raw message for admission.  Returns False if the queue is full."""
        try:
            self._queue.put_nowait(raw)
        except asyncio.QueueFull:
            logger.warning("Loop %s: inbound queue full, dropping message", self.loop_id)
            return False
        return True

    async def report_ready(self) -> bool:
        """Report readiness to the sandbox barrier (after the readiness check, if any)."""
        if self._readiness is not None and not await self._readiness():
            await self._sandbox.drop_readiness(self.loop_id, "readiness check failed")
            return False
        return await self._sandbox.sync(self.loop_id)

    async def start(self) -> None:
        await self._sandbox.register(self.loop_id)
        self._task = asyncio.create_task(self._run(), name=f"loop-{self.loop_id}")
        self._rounds_task = asyncio.create_task(self._follow_rounds(), name=f"loop-{self.loop_id}-rounds")
        logger.info("Loop %s started", self.loop_id)

    async def stop(self) -> None:
        for task in (self._task, self._rounds_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._rounds_task = None
        await self._sandbox.unregister(self.loop_id)
        logger.info("Loop %s stopped", self.loop_id)

    async def join(self) -> None:
        """Wait until every queued message has been processed."""
        await self._queue.join()

    async def deliver(self, message: AdmittedMessage) -> None:
        """Run the handler on an already admitted message."""
        try:
            await self._handler(message)
            self.handled += 1
        except Exception:
            self.faults += 1
            logger.exception("Loop %s: handler failed on message from %s", self.loop_id, message.identity)
            await self._fault("handler fault")

    async def _fault(self, reason: str) -> None:
        """Drop readiness, then report again so the barrier can recover."""
        try:
            await self._sandbox.drop_readiness(self.loop_id, reason)
            await self.report_ready()
        except LockTimeout:
            logger.error("Loop %s: could not update readiness after %s", self.loop_id, reason)

    async def _process(self, raw: Any) -> None:
        try:
            message = await self._pipeline.admit(raw, self.loop_id)
        except AdmissionError as exc:
            self.rejected += 1
            if self._on_reject is not None:
                try:
                    await self._on_reject(exc, raw)
                except Exception:
                    logger.exception("Loop %s: rejection callback failed", self.loop_id)
            return
        except Exception:
            self.rejected += 1
            logger.exception("Loop %s: admission failed unexpectedly", self.loop_id)
            await self._fault("admission fault")
            return
        await self.deliver(message)

    async def _follow_rounds(self) -> None:
        seen = self._sandbox.round
        while True:
            seen = await self._sandbox.next_round(seen)
            try:
                await self.report_ready()
            except (LockTimeout, KeyError) as exc:
                logger.warning("Loop %s: readiness round %d not reported: %s", self.loop_id, seen, exc)

    async def _run(self) -> None:
        while True:
            raw = await self._queue.get()
            try:
                await self._process(raw)
            finally:
                self._queue.task_done()
