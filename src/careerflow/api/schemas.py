from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from careerflow.core.scheduler import JobRecord
from careerflow.types import ExtractedJobData, JobStatus


class JobSubmitRequest(BaseModel):
    user_id: str = ""
    target_url: str = ""
    extracted: ExtractedJobData | None = None


class JobSubmitResponse(BaseModel):
    accepted: bool
    request_id: str
    already_queued: bool
    status: JobStatus


class JobRecordResponse(BaseModel):
    user_id: str
    target_url: str
    request_id: str
    status: JobStatus
    current_step: str
    step_detail: str | None = None
    error: str | None = None
    enqueued_at: float
    updated_at: float
    title: str = ""
    company: str = ""
    queue_position: int | None = None
    result: dict[str, Any] | None = None

    @classmethod
    def from_record(
        cls, record: JobRecord, *, queue_position: int | None = None, include_result: bool = False
    ) -> "JobRecordResponse":
        return cls(
            **record.to_dict(),
            queue_position=queue_position,
            result=record.result if include_result else None,
        )


class PendingJobsResponse(BaseModel):
    user_id: str
    jobs: list[JobRecordResponse] = Field(default_factory=list)
