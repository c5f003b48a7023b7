from __future__ import annotations

from typing import Any, Protocol

from careerflow.types import (
    AnalysisResult,
    ChatThread,
    CVData,
    GeneratedContent,
    GenerationOutput,
    InterviewQABatch,
    JobInfo,
    MessagePreferences,
    SavedJob,
    TailoredCV,
    UserProfile,
    WorkExperience,
)


class ProfileSource(Protocol):
    async def fetch_user_profile(self, user_id: str) -> UserProfile: ...

    async def get_message_preferences(self, user_id: str) -> MessagePreferences: ...

    async def get_cv_data(self, user_id: str) -> CVData: ...


class JobAnalyzer(Protocol):
    async def analyze(
        self,
        job_input: str,
        *,
        user_id: str,
        skills: list[str],
        profile: UserProfile,
    ) -> AnalysisResult: ...


class JobRepository(Protocol):
    async def persist_analysis(self, result: AnalysisResult, *, user_id: str, job_url: str) -> SavedJob: ...

    async def create_or_get_thread(
        self, user_id: str, job_url: str, title: str, company: str
    ) -> ChatThread: ...

    async def create_analysis_messages(
        self,
        thread_id: int,
        *,
        job_description: str,
        result: AnalysisResult,
        user_skills: list[str],
        job_url: str,
        user_id: str,
    ) -> list[int]: ...

    async def save_tailored_cv(
        self, cv: TailoredCV, *, user_id: str, thread_id: int | None, job: JobInfo
    ) -> int: ...

    async def create_content_messages(
        self,
        thread_id: int,
        *,
        cover_letter: str | None,
        cv: TailoredCV | None,
        interview_qa: list[InterviewQABatch] | None,
        user_id: str,
    ) -> list[int]: ...

    async def portfolio_exists(self, thread_id: int) -> bool: ...

    async def save_portfolio(self, *, thread_id: int, user_id: str, html: str, title: str) -> int: ...


class ContentGenerator(Protocol):
    async def generate_cover_letter(self, *, profile: UserProfile, job: JobInfo) -> GenerationOutput: ...

    async def generate_tailored_cv(self, *, cv_data: CVData, job: JobInfo) -> GenerationOutput: ...

    async def rephrase_experiences(
        self, *, experiences: dict[int, WorkExperience], job: JobInfo | None
    ) -> GenerationOutput: ...

    async def generate_interview_qa(
        self, *, profile: UserProfile, job: JobInfo, batch_index: int = 1
    ) -> GenerationOutput: ...

    async def generate_portfolio(
        self, *, cv_data: CVData, job: JobInfo, content: GeneratedContent
    ) -> GenerationOutput: ...


class SemanticScorer(Protocol):
    async def score_skills(self, candidate_skills: list[str], target_skills: list[str]) -> int: ...

    async def score_similarity(self, text: str, target_text: str) -> int: ...


class CreditLedger(Protocol):
    async def deduct_credits(
        self, amount: int, reason: str, user_id: str, cost_info: dict[str, Any]
    ) -> bool: ...
