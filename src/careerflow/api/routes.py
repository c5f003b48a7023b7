from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from careerflow.api.schemas import (
    JobRecordResponse,
    JobSubmitRequest,
    JobSubmitResponse,
    PendingJobsResponse,
)
from careerflow.core.runtime import get_job_worker
from careerflow.core.scheduler import AdmissionError
from careerflow.core.worker import JobWorker

router = APIRouter(prefix="/api", tags=["api"])


def get_worker() -> JobWorker:
    return get_job_worker()


@router.post("/jobs", response_model=JobSubmitResponse)
async def submit_job(payload: JobSubmitRequest, worker: JobWorker = Depends(get_worker)) -> JobSubmitResponse:
    try:
        result = worker.submit(payload.user_id, payload.target_url, payload.extracted)
    except AdmissionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JobSubmitResponse(**result.to_dict())


@router.get("/jobs/status", response_model=JobRecordResponse)
def get_job_status(user_id: str, target_url: str, worker: JobWorker = Depends(get_worker)) -> JobRecordResponse:
    record = worker.get_status(user_id, target_url)
    if record is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobRecordResponse.from_record(
        record,
        queue_position=worker.state.queue.position(record.key),
        include_result=True,
    )


@router.get("/jobs/pending", response_model=PendingJobsResponse)
def list_pending_jobs(user_id: str, worker: JobWorker = Depends(get_worker)) -> PendingJobsResponse:
    return PendingJobsResponse(
        user_id=user_id,
        jobs=[
            JobRecordResponse.from_record(record, queue_position=worker.state.queue.position(record.key))
            for record in worker.list_pending(user_id)
        ],
    )


@router.websocket("/jobs/stream/{user_id}")
async def stream_job_events(
    websocket: WebSocket,
    user_id: str,
    request_id: str | None = None,
    worker: JobWorker = Depends(get_worker),
) -> None:
    await websocket.accept()

    with worker.bus.subscribe(user_id, request_id) as subscription:
        try:
            for record in worker.list_pending(user_id):
                if request_id is None or record.request_id == request_id:
                    await websocket.send_json(record.to_event().model_dump(mode="json"))
                    if request_id is not None and record.is_terminal:
                        await websocket.close()
                        return

            async for event in subscription:
                await websocket.send_json(event.model_dump(mode="json"))
                if request_id is not None and event.final:
                    await websocket.close()
                    return
        except WebSocketDisconnect:
            return
