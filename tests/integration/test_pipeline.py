import asyncio
import threading
import time

import pytest

from careerflow.core.pipeline import AnalysisError, JobPipeline, PersistenceError
from careerflow.core.scheduler import JobKey, JobRecord
from careerflow.types import AnalysisResult, ExtractedJobData, JobInfo, MessagePreferences, UsageMetrics

URL = "https://jobs.example/platform-engineer"


class StepLog:
    def __init__(self) -> None:
        self.steps: list[tuple[str, str | None]] = []

    def __call__(self, step: str, detail: str | None = None) -> None:
        self.steps.append((step, detail))

    @property
    def names(self) -> list[str]:
        return [step for step, _ in self.steps]


class SlowLedger:
    """Thread-backed ledger whose writes outlive the persistence timeout."""

    def __init__(self, delay: float = 0.3) -> None:
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self.finished: list[str] = []
        self._lock = threading.Lock()

    def _write(self, reason: str) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
            self.finished.append(reason)

    async def deduct_credits(self, amount: int, reason: str, user_id: str, cost_info: dict) -> bool:
        await asyncio.to_thread(self._write, reason)
        return True


def _record(extracted: ExtractedJobData | None = None) -> JobRecord:
    return JobRecord(key=JobKey("u1", URL), request_id="r1", extracted=extracted)


def _run(fakes, settings, record: JobRecord | None = None, **kwargs):
    pipeline = JobPipeline(fakes.build(), settings=settings, **kwargs)
    log = StepLog()
    outcome = asyncio.run(pipeline.run(record or _record(), log))
    return outcome, log


def test_full_run_reports_every_stage_and_bills_in_order(fakes, settings) -> None:
    fakes.profiles.preferences = MessagePreferences(has_skills=True)
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    settings = settings.model_copy(update={"portfolio_rate_limit_delay_sec": 2.5})
    outcome, log = _run(fakes, settings, sleep=fake_sleep)

    assert log.names == [
        "fetching_profile",
        "analyzing_job",
        "creating_chat",
        "saving_job",
        "generating_content",
        "generating_cover_letter",
        "generating_cv",
        "generating_interview_qa",
        "generating_portfolio",
    ]
    assert [reason for _, reason, _ in fakes.ledger.deductions] == [
        "Job Analysis: parse",
        "Cover Letter",
        "CV Tailoring",
        "Interview QA",
        "Portfolio Generation",
    ]
    assert fakes.ledger.deductions[-1][0] == 2
    assert delays == [2.5]

    content = outcome.content
    assert content.cover_letter.startswith("Dear Hiring Team")
    assert content.cv is not None
    assert "Kubernetes" not in content.cv.skills
    assert len(content.interview_qa[0].items) == 5
    assert content.portfolio_id == 1
    assert fakes.repository.portfolios[0]["title"] == "Platform Engineer at Hooli"
    assert content.errors == []
    assert outcome.used_fallback_input is False
    assert outcome.saved_job.job_url == URL


def test_analysis_falls_back_to_reconstructed_text(fakes, settings) -> None:
    fakes.analyzer.responses = [ConnectionError("network down")]
    extracted = ExtractedJobData(title="Platform Engineer", company="Hooli", text="Full page text")

    outcome, log = _run(fakes, settings, _record(extracted))

    assert fakes.analyzer.inputs == [
        "Full page text",
        "Job Title: Platform Engineer\n\nCompany: Hooli\n\nJob Description:\nFull page text",
    ]
    assert ("analyzing_job", "fallback_dom_text") in log.steps
    assert outcome.used_fallback_input is True
    assert fakes.repository.saved == [("u1", URL)]


def test_analysis_without_extracted_data_fails_with_original_error(fakes, settings) -> None:
    fakes.analyzer.responses = [ConnectionError("network down")]

    with pytest.raises(AnalysisError, match="network down"):
        _run(fakes, settings)

    assert fakes.analyzer.inputs == [URL]
    assert fakes.repository.saved == []


def test_second_analysis_failure_reports_the_first_error(fakes, settings) -> None:
    fakes.analyzer.responses = [ConnectionError("network down"), ValueError("bad parse")]
    extracted = ExtractedJobData(description="Build APIs")

    with pytest.raises(AnalysisError, match="network down"):
        _run(fakes, settings, _record(extracted))

    assert len(fakes.analyzer.inputs) == 2


def test_persistence_failure_is_fatal(fakes, settings) -> None:
    fakes.repository.fail_persist = True

    with pytest.raises(PersistenceError, match="database is locked"):
        _run(fakes, settings)

    assert fakes.generator.calls == []


def test_timed_out_persistence_fails_only_after_the_write_settles(fakes, settings) -> None:
    written: list[str] = []

    async def slow_persist(result, *, user_id: str, job_url: str):
        await asyncio.to_thread(time.sleep, 0.3)
        written.append(job_url)
        raise RuntimeError("commit landed late")

    fakes.repository.persist_analysis = slow_persist
    settings = settings.model_copy(update={"persistence_timeout_sec": 0.1})

    with pytest.raises(PersistenceError, match="persist_analysis timed out"):
        _run(fakes, settings)

    assert written == [URL]
    assert fakes.generator.calls == []


def test_timed_out_deduction_settles_before_the_next_one(fakes, settings) -> None:
    fakes.ledger = SlowLedger()
    settings = settings.model_copy(update={"persistence_timeout_sec": 0.1})
    pipeline = JobPipeline(fakes.build(), settings=settings)
    usage = UsageMetrics(provider="deepseek", prompt_tokens=1000, completion_tokens=500)

    async def scenario() -> None:
        await pipeline._bill("u1", "Cover Letter", usage)
        await pipeline._bill("u1", "Interview QA", usage)

    asyncio.run(scenario())

    assert fakes.ledger.max_active == 1
    assert fakes.ledger.finished == ["Cover Letter", "Interview QA"]


def test_concurrent_deductions_are_serialized(fakes, settings) -> None:
    fakes.ledger = SlowLedger(delay=0.05)
    pipeline = JobPipeline(fakes.build(), settings=settings)
    usage = UsageMetrics(provider="deepseek", prompt_tokens=1000, completion_tokens=500)

    async def scenario() -> None:
        await asyncio.gather(*(pipeline._bill("u1", f"Operation {n}", usage) for n in range(3)))

    asyncio.run(scenario())

    assert fakes.ledger.max_active == 1
    assert len(fakes.ledger.finished) == 3


def test_soft_stage_failures_do_not_fail_the_job(fakes, settings) -> None:
    fakes.profiles.fail_profile = True
    fakes.repository.fail_thread = True
    fakes.generator.fail.add("cover_letter")

    outcome, log = _run(fakes, settings)

    assert outcome.thread is None
    assert outcome.content.cover_letter is None
    assert outcome.content.errors == ["generating_cover_letter: cover_letter failed"]
    assert outcome.content.cv is not None
    assert outcome.content.interview_qa is not None
    assert fakes.repository.saved == [("u1", URL)]
    assert not [message for message in fakes.repository.messages if message["kind"] == "content"]


def test_skill_dependent_stages_need_skills(fakes, settings) -> None:
    fakes.profiles.preferences = MessagePreferences(has_skills=False, portfolio=False)

    outcome, log = _run(fakes, settings)

    assert fakes.generator.calls == ["cover_letter"]
    assert "generating_cv" not in log.names
    assert outcome.content.cv is None


def test_preference_lookup_failure_uses_defaults(fakes, settings) -> None:
    fakes.profiles.fail_preferences = True
    settings = settings.model_copy(update={"portfolio_generation_enabled": False})

    _run(fakes, settings)

    assert fakes.generator.calls == ["cover_letter"]


def test_existing_portfolio_is_not_regenerated(fakes, settings) -> None:
    fakes.profiles.preferences = MessagePreferences(has_skills=True)
    fakes.repository.has_portfolio = True

    outcome, _ = _run(fakes, settings)

    assert "portfolio" not in fakes.generator.calls
    assert outcome.content.portfolio_id is None


def test_rejected_deductions_keep_generated_content(fakes, settings) -> None:
    fakes.ledger.accept = False

    outcome, _ = _run(fakes, settings)

    assert outcome.content.cover_letter
    assert len(fakes.ledger.deductions) == 4


def test_failed_tailoring_saves_untailored_cv(fakes, settings) -> None:
    fakes.generator.fail.add("tailored_cv")

    outcome, _ = _run(fakes, settings)

    cv = outcome.content.cv
    assert cv is not None
    assert cv.summary == fakes.profiles.cv_data.user.summary
    assert cv.match_before == cv.match_after
    assert fakes.repository.cvs == [cv]


def test_analysis_operations_are_each_billed(fakes, settings) -> None:
    analysis = AnalysisResult.model_validate(
        {
            "job_info": JobInfo(title="SRE").model_dump(),
            "operations": [
                {"operation": "scrape", "usage": {"provider": "scraper"}},
                {"operation": "parse", "usage": {"provider": "deepseek", "prompt_tokens": 10}},
                {"operation": "skill_match", "usage": {"provider": "none"}},
            ],
        }
    )
    fakes.analyzer.responses = [analysis]
    fakes.profiles.preferences = MessagePreferences(cv=False, cover_letter=False, interview_qa=False, portfolio=False)

    _run(fakes, settings)

    assert [reason for _, reason, _ in fakes.ledger.deductions] == ["Job Analysis: scrape", "Job Analysis: parse"]
