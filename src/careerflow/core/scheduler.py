from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from careerflow.types import TERMINAL_STATUSES, ExtractedJobData, JobStatus, ProgressEvent


class AdmissionError(ValueError):
    pass


class JobKey(NamedTuple):
    user_id: str
    target_url: str


@dataclass(slots=True)
class JobRecord:
    key: JobKey
    request_id: str
    status: JobStatus = "queued"
    current_step: str = "queued"
    step_detail: str | None = None
    error: str | None = None
    enqueued_at: float = 0.0
    updated_at: float = 0.0
    title: str = ""
    company: str = ""
    extracted: ExtractedJobData | None = None
    result: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_event(self) -> ProgressEvent:
        return ProgressEvent(
            user_id=self.key.user_id,
            request_id=self.request_id,
            target_url=self.key.target_url,
            status=self.status,
            current_step=self.current_step,
            step_detail=self.step_detail,
            error=self.error,
            title=self.title,
            company=self.company,
            updated_at=self.updated_at,
            final=self.is_terminal,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.key.user_id,
            "target_url": self.key.target_url,
            "request_id": self.request_id,
            "status": self.status,
            "current_step": self.current_step,
            "step_detail": self.step_detail,
            "error": self.error,
            "enqueued_at": self.enqueued_at,
            "updated_at": self.updated_at,
            "title": self.title,
            "company": self.company,
        }


class MonotonicClock:
    """Never-decreasing timestamps, strictly increasing across calls."""

    def __init__(self) -> None:
        self._last = 0.0

    def __call__(self) -> float:
        now = time.monotonic()
        if now <= self._last:
            now = self._last + 1e-6
        self._last = now
        return now


class JobStore:
    def __init__(self) -> None:
        self._records: dict[JobKey, JobRecord] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, key: JobKey) -> JobRecord | None:
        return self._records.get(key)

    def put(self, record: JobRecord) -> None:
        self._records[record.key] = record

    def remove(self, key: JobKey) -> JobRecord | None:
        return self._records.pop(key, None)

    def for_user(self, user_id: str) -> list[JobRecord]:
        return [record for key, record in self._records.items() if key.user_id == user_id]


class JobQueue:
    def __init__(self) -> None:
        self._keys: deque[JobKey] = deque()

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def enqueue(self, key: JobKey) -> None:
        if key in self._keys:
            raise ValueError(f"{key} is already queued")
        self._keys.append(key)

    def dequeue(self) -> JobKey | None:
        if not self._keys:
            return None
        return self._keys.popleft()

    def position(self, key: JobKey) -> int | None:
        for idx, queued in enumerate(self._keys):
            if queued == key:
                return idx + 1
        return None


@dataclass(slots=True)
class SchedulerState:
    """All mutable admission/execution state owned by one worker."""

    store: JobStore = field(default_factory=JobStore)
    queue: JobQueue = field(default_factory=JobQueue)
    draining: bool = False
    clock: MonotonicClock = field(default_factory=MonotonicClock)


@dataclass(slots=True)
class SubmitResult:
    accepted: bool
    request_id: str
    already_queued: bool
    status: JobStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "request_id": self.request_id,
            "already_queued": self.already_queued,
            "status": self.status,
        }


def pending_sort_key(record: JobRecord, queue: JobQueue) -> tuple[int, int, float]:
    if record.status == "running":
        return (0, 0, record.enqueued_at)
    if record.status == "queued":
        position = queue.position(record.key)
        return (1, position if position is not None else 0, record.enqueued_at)
    return (2, 0, record.enqueued_at)
