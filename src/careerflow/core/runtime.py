from __future__ import annotations

from careerflow.config import get_settings
from careerflow.core.events import ProgressBus
from careerflow.core.pipeline import JobPipeline, PipelineServices
from careerflow.core.worker import JobWorker

_EVENT_BUS: ProgressBus | None = None
_JOB_WORKER: JobWorker | None = None


def get_event_bus() -> ProgressBus:
    global _EVENT_BUS
    if _EVENT_BUS is None:
        _EVENT_BUS = ProgressBus()
    return _EVENT_BUS


def build_services() -> PipelineServices:
    from careerflow.db.gateway import RepositoryGateway
    from careerflow.llm.router import LLMRouter

    settings = get_settings()
    gateway = RepositoryGateway()
    router = LLMRouter(settings=settings)
    scorer = router if settings.semantic_scoring_enabled and settings.deepseek_configured else None
    return PipelineServices(
        profiles=gateway,
        analyzer=router,
        repository=gateway,
        generator=router,
        ledger=gateway,
        scorer=scorer,
    )


def get_job_worker() -> JobWorker:
    global _JOB_WORKER
    if _JOB_WORKER is None:
        settings = get_settings()
        pipeline = JobPipeline(build_services(), settings=settings)
        _JOB_WORKER = JobWorker(pipeline, bus=get_event_bus(), settings=settings)
    return _JOB_WORKER


def reset_runtime() -> None:
    global _EVENT_BUS, _JOB_WORKER
    _EVENT_BUS = None
    _JOB_WORKER = None
