from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_TEST_DIR = Path(tempfile.gettempdir()) / "careerflow-tests"
_TEST_DIR.mkdir(parents=True, exist_ok=True)
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR / 'careerflow.db'}"
os.environ["DATA_DIR"] = str(_TEST_DIR)
os.environ["APP_ENV"] = "test"
os.environ["DEEPSEEK_API_KEY"] = ""
os.environ["GEMINI_API_KEY"] = ""

import pytest  # noqa: E402

from careerflow.config import Settings  # noqa: E402
from careerflow.core import runtime  # noqa: E402
from careerflow.core.pipeline import PipelineServices  # noqa: E402
from careerflow.db import models  # noqa: E402,F401
from careerflow.db.base import Base  # noqa: E402
from careerflow.db.session import engine  # noqa: E402
from careerflow.types import (  # noqa: E402
    AnalysisResult,
    ChatThread,
    CVData,
    GeneratedContent,
    GenerationOutput,
    JobInfo,
    MessagePreferences,
    ModelResponse,
    OperationUsage,
    Project,
    SavedJob,
    UsageMetrics,
    UserProfile,
    WorkExperience,
)


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    runtime.reset_runtime()
    yield


def deepseek_usage(prompt: int = 1000, completion: int = 500) -> UsageMetrics:
    return UsageMetrics(provider="deepseek", prompt_tokens=prompt, completion_tokens=completion)


def sample_cv() -> CVData:
    return CVData(
        user=UserProfile(
            full_name="Ada Lovelace",
            summary="Backend engineer building data pipelines with Python and PostgreSQL.",
            skills=["Python", "PostgreSQL", "Docker"],
        ),
        work_experiences=[
            WorkExperience(position="Backend Engineer", company="Acme", description="Built Python APIs on AWS."),
            WorkExperience(position="Data Engineer", company="Globex", description="Ran nightly ETL jobs."),
            WorkExperience(position="Intern", company="Initech", description=""),
        ],
        projects=[Project(name="Tracker", description="Job tracker", technologies=["FastAPI", "React"])],
    )


class FakeProfiles:
    def __init__(self) -> None:
        self.profile = UserProfile(full_name="Ada Lovelace", skills=["Python", "PostgreSQL"])
        self.preferences = MessagePreferences(has_skills=True, portfolio=False)
        self.cv_data = sample_cv()
        self.fail_profile = False
        self.fail_preferences = False

    async def fetch_user_profile(self, user_id: str) -> UserProfile:
        if self.fail_profile:
            raise ConnectionError("profile service unavailable")
        return self.profile

    async def get_message_preferences(self, user_id: str) -> MessagePreferences:
        if self.fail_preferences:
            raise ConnectionError("preferences unavailable")
        return self.preferences

    async def get_cv_data(self, user_id: str) -> CVData:
        return self.cv_data


class FakeAnalyzer:
    """Returns queued responses in order; an Exception entry is raised instead."""

    def __init__(self) -> None:
        self.responses: list[AnalysisResult | Exception] = []
        self.inputs: list[str] = []

    async def analyze(
        self, job_input: str, *, user_id: str, skills: list[str], profile: UserProfile
    ) -> AnalysisResult:
        self.inputs.append(job_input)
        response = self.responses.pop(0) if self.responses else default_analysis()
        if isinstance(response, Exception):
            raise response
        return response


def default_analysis() -> AnalysisResult:
    return AnalysisResult(
        job_info=JobInfo(
            title="Platform Engineer",
            company="Hooli",
            description="We need Python and PostgreSQL experience to build APIs.",
            skills=["Python", "PostgreSQL", "Kubernetes"],
        ),
        job_skills=["Python", "PostgreSQL", "Kubernetes"],
        operations=[OperationUsage(operation="parse", usage=deepseek_usage())],
    )


class FakeRepository:
    def __init__(self) -> None:
        self.saved: list[tuple[str, str]] = []
        self.threads: list[ChatThread] = []
        self.messages: list[dict[str, Any]] = []
        self.cvs: list[Any] = []
        self.portfolios: list[dict[str, Any]] = []
        self.fail_persist = False
        self.fail_thread = False
        self.has_portfolio = False

    async def persist_analysis(self, result: AnalysisResult, *, user_id: str, job_url: str) -> SavedJob:
        if self.fail_persist:
            raise RuntimeError("database is locked")
        self.saved.append((user_id, job_url))
        return SavedJob(id=len(self.saved), user_id=user_id, job_url=job_url, title=result.job_info.title)

    async def create_or_get_thread(self, user_id: str, job_url: str, title: str, company: str) -> ChatThread:
        if self.fail_thread:
            raise RuntimeError("thread insert failed")
        thread = ChatThread(id=len(self.threads) + 1, user_id=user_id, job_url=job_url, title=title, company=company)
        self.threads.append(thread)
        return thread

    async def create_analysis_messages(self, thread_id: int, **kwargs: Any) -> list[int]:
        self.messages.append({"thread_id": thread_id, "kind": "analysis", **kwargs})
        return [1, 2]

    async def save_tailored_cv(self, cv: Any, *, user_id: str, thread_id: int | None, job: JobInfo) -> int:
        self.cvs.append(cv)
        return len(self.cvs)

    async def create_content_messages(self, thread_id: int, **kwargs: Any) -> list[int]:
        self.messages.append({"thread_id": thread_id, "kind": "content", **kwargs})
        return [3]

    async def portfolio_exists(self, thread_id: int) -> bool:
        return self.has_portfolio

    async def save_portfolio(self, *, thread_id: int, user_id: str, html: str, title: str) -> int:
        self.portfolios.append({"thread_id": thread_id, "html": html, "title": title})
        return len(self.portfolios)


class FakeGenerator:
    def __init__(self) -> None:
        self.fail: set[str] = set()
        self.calls: list[str] = []
        self.cv_patch: Any = {
            "summary": "Python backend engineer focused on PostgreSQL-backed APIs.",
            "skills": ["Python", "PostgreSQL", "Kubernetes"],
            "experiences": [
                {"index": 0, "description": "Designed Python APIs on AWS."},
                {"index": 1, "description": "Owned nightly ETL jobs."},
                {"index": 2, "description": "Supported the data team."},
            ],
        }
        self.rephrase: Any = {"experiences": []}

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise RuntimeError(f"{name} failed")

    async def generate_cover_letter(self, *, profile: UserProfile, job: JobInfo) -> GenerationOutput:
        self._call("cover_letter")
        return GenerationOutput(content="Dear Hiring Team,\nI would love to join.", usage=deepseek_usage())

    async def generate_tailored_cv(self, *, cv_data: CVData, job: JobInfo) -> GenerationOutput:
        self._call("tailored_cv")
        return GenerationOutput(content=self.cv_patch, usage=deepseek_usage())

    async def rephrase_experiences(
        self, *, experiences: dict[int, WorkExperience], job: JobInfo | None
    ) -> GenerationOutput:
        self._call("rephrase")
        return GenerationOutput(content=self.rephrase, usage=deepseek_usage(200, 100))

    async def generate_interview_qa(
        self, *, profile: UserProfile, job: JobInfo, batch_index: int = 1
    ) -> GenerationOutput:
        self._call("interview_qa")
        items = [{"q": f"Question {n}?", "a": f"Answer {n}."} for n in range(1, 6)]
        return GenerationOutput(content={"items": items}, usage=deepseek_usage())

    async def generate_portfolio(
        self, *, cv_data: CVData, job: JobInfo, content: GeneratedContent
    ) -> GenerationOutput:
        self._call("portfolio")
        return GenerationOutput(
            content="<!DOCTYPE html><html><body>Ada</body></html>",
            usage=UsageMetrics(provider="gemini", prompt_tokens=2000, completion_tokens=8000),
        )


class FakeLedger:
    def __init__(self) -> None:
        self.deductions: list[tuple[int, str, str]] = []
        self.accept = True

    async def deduct_credits(self, amount: int, reason: str, user_id: str, cost_info: dict[str, Any]) -> bool:
        self.deductions.append((amount, reason, user_id))
        return self.accept


class FakeProvider:
    """Pops scripted responses in call order; Exception entries are raised."""

    def __init__(self, name: str = "deepseek") -> None:
        self.name = name
        self.responses: list[Any] = []
        self.prompts: list[str] = []

    def _next(self, prompt: str) -> Any:
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def _usage(self) -> UsageMetrics:
        return UsageMetrics(provider=self.name, prompt_tokens=100, completion_tokens=50)

    async def complete_json(self, *, prompt: str, system: str | None = None, temperature: float | None = None):
        return self._next(prompt), self._usage()

    async def complete_text(
        self, *, prompt: str, system: str | None = None, temperature: float | None = None, json_mode: bool = False
    ) -> ModelResponse:
        return ModelResponse(content=self._next(prompt), usage=self._usage())


class FakePool:
    def __init__(self) -> None:
        self.deepseek_provider = FakeProvider("deepseek")
        self.gemini_provider = FakeProvider("gemini")

    def deepseek(self) -> FakeProvider:
        return self.deepseek_provider

    def gemini(self) -> FakeProvider:
        return self.gemini_provider


@dataclass
class FakeServices:
    profiles: FakeProfiles = field(default_factory=FakeProfiles)
    analyzer: FakeAnalyzer = field(default_factory=FakeAnalyzer)
    repository: FakeRepository = field(default_factory=FakeRepository)
    generator: FakeGenerator = field(default_factory=FakeGenerator)
    ledger: FakeLedger = field(default_factory=FakeLedger)

    def build(self) -> PipelineServices:
        return PipelineServices(
            profiles=self.profiles,
            analyzer=self.analyzer,
            repository=self.repository,
            generator=self.generator,
            ledger=self.ledger,
        )


@pytest.fixture
def fakes() -> FakeServices:
    return FakeServices()


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="test",
        deepseek_api_key="",
        gemini_api_key="",
        portfolio_rate_limit_delay_sec=0,
        job_cleanup_delay_sec=0,
    )


@pytest.fixture
def cv_data() -> CVData:
    return sample_cv()
