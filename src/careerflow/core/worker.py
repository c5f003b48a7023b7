from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Protocol

from careerflow.config import Settings, get_settings
from careerflow.core.events import ProgressBus
from careerflow.core.scheduler import (
    AdmissionError,
    JobKey,
    JobRecord,
    SchedulerState,
    SubmitResult,
    pending_sort_key,
)
from careerflow.types import ExtractedJobData, JobStatus, PipelineOutcome

logger = logging.getLogger(__name__)


class Pipeline(Protocol):
    async def run(self, record: JobRecord, report: Any) -> PipelineOutcome: ...


class JobWorker:
    """Admits jobs and executes them one at a time.

    Only ``submit`` and the drain loop write to the scheduler state. ``drain``
    is guarded by ``state.draining`` so concurrent kicks never start a second
    loop; the loop moves to the next key only after the current pipeline settles.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        bus: ProgressBus | None = None,
        state: SchedulerState | None = None,
        settings: Settings | None = None,
        cleanup_delay_sec: float | None = None,
    ):
        self.pipeline = pipeline
        self.bus = bus or ProgressBus()
        self.state = state or SchedulerState()
        self.settings = settings or get_settings()
        self.cleanup_delay_sec = (
            self.settings.job_cleanup_delay_sec if cleanup_delay_sec is None else cleanup_delay_sec
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    def submit(
        self,
        user_id: str,
        target_url: str,
        extracted: ExtractedJobData | None = None,
        *,
        start: bool = True,
    ) -> SubmitResult:
        user_id = (user_id or "").strip()
        target_url = (target_url or "").strip()
        if not user_id or not target_url:
            raise AdmissionError("Missing user_id or target_url")

        key = JobKey(user_id, target_url)
        existing = self.state.store.get(key)
        if existing is not None:
            logger.info("Job already queued user_id=%s url=%s request_id=%s", user_id, target_url, existing.request_id)
            return SubmitResult(
                accepted=False,
                request_id=existing.request_id,
                already_queued=True,
                status=existing.status,
            )

        now = self.state.clock()
        record = JobRecord(
            key=key,
            request_id=uuid.uuid4().hex,
            enqueued_at=now,
            updated_at=now,
            title=extracted.title if extracted else "",
            company=extracted.company if extracted else "",
            extracted=extracted,
        )
        self.state.store.put(record)
        self.state.queue.enqueue(key)
        self.bus.publish(record.to_event())
        logger.info("Job queued user_id=%s url=%s request_id=%s", user_id, target_url, record.request_id)

        if start:
            self.kick()
        return SubmitResult(accepted=True, request_id=record.request_id, already_queued=False, status="queued")

    def kick(self) -> asyncio.Task[None] | None:
        """Schedule ``drain`` on the running loop, if there is one."""
        if self.state.draining:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return self._track(loop.create_task(self.drain()))

    async def drain(self) -> None:
        if self.state.draining:
            return
        self.state.draining = True
        try:
            while len(self.state.queue):
                key = self.state.queue.dequeue()
                if key is None:
                    break
                record = self.state.store.get(key)
                if record is None or record.status != "queued":
                    logger.warning("Skipping dequeued key without a queued record key=%s", key)
                    continue
                await self._execute(record)
        finally:
            self.state.draining = False

    async def _execute(self, record: JobRecord) -> None:
        self._transition(record, status="running", step="starting")

        def report(step: str, detail: str | None = None) -> None:
            self._transition(record, status="running", step=step, detail=detail)

        try:
            outcome = await self.pipeline.run(record, report)
        except Exception as exc:
            logger.exception("Job failed user_id=%s url=%s", *record.key)
            self._transition(record, status="error", step="failed", error=str(exc) or type(exc).__name__)
        else:
            record.result = outcome.model_dump(mode="json")
            if outcome.analysis.job_info.title and not record.title:
                record.title = outcome.analysis.job_info.title
            if outcome.analysis.job_info.company and not record.company:
                record.company = outcome.analysis.job_info.company
            self._transition(record, status="success", step="completed")
        self.cleanup(record.key, self.cleanup_delay_sec)

    def _transition(
        self,
        record: JobRecord,
        *,
        status: JobStatus,
        step: str,
        detail: str | None = None,
        error: str | None = None,
    ) -> None:
        record.status = status
        record.current_step = step
        record.step_detail = detail
        record.error = error if status == "error" else None
        record.updated_at = self.state.clock()
        self.bus.publish(record.to_event())

    def cleanup(self, key: JobKey, delay: float) -> asyncio.Task[None] | None:
        """Remove ``key`` after ``delay`` seconds if it is still terminal at that point."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._remove_if_terminal(key)
            return None
        return self._track(loop.create_task(self._cleanup_after(key, delay)))

    async def _cleanup_after(self, key: JobKey, delay: float) -> None:
        await asyncio.sleep(delay)
        self._remove_if_terminal(key)

    def _remove_if_terminal(self, key: JobKey) -> None:
        record = self.state.store.get(key)
        if record is None or not record.is_terminal:
            return
        self.state.store.remove(key)
        logger.debug("Cleaned up job user_id=%s url=%s", *key)

    def get_status(self, user_id: str, target_url: str) -> JobRecord | None:
        return self.state.store.get(JobKey(user_id.strip(), target_url.strip()))

    def list_pending(self, user_id: str) -> list[JobRecord]:
        records = self.state.store.for_user(user_id)
        return sorted(records, key=lambda record: pending_sort_key(record, self.state.queue))

    async def join(self) -> None:
        """Wait for the drain loop and every scheduled cleanup to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and nothing is running; cleanups may still be pending."""
        while self.state.draining or len(self.state.queue):
            await asyncio.sleep(0)

    def _track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
