from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from careerflow.db.models import Experience, User
from careerflow.db.repositories import Repository
from careerflow.db.session import SessionLocal
from careerflow.types import (
    AnalysisResult,
    ChatThread,
    CVData,
    Education,
    InterviewQABatch,
    JobInfo,
    MessagePreferences,
    Project,
    SavedJob,
    TailoredCV,
    UserProfile,
    WorkExperience,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RepositoryGateway:
    """Async facade over ``Repository`` for the pipeline.

    Each call opens its own session and runs on a worker thread so the event
    loop keeps serving progress streams while the database works.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self.session_factory = session_factory or SessionLocal

    async def _run(self, fn: Callable[[Repository], T]) -> T:
        def call() -> T:
            with self.session_factory() as session:
                return fn(Repository(session))

        return await asyncio.to_thread(call)

    async def fetch_user_profile(self, user_id: str) -> UserProfile:
        def load(repo: Repository) -> UserProfile:
            return to_user_profile(_require_user(repo, user_id))

        return await self._run(load)

    async def get_message_preferences(self, user_id: str) -> MessagePreferences:
        def load(repo: Repository) -> MessagePreferences:
            user = _require_user(repo, user_id)
            return MessagePreferences(
                cv=user.pref_cv,
                cover_letter=user.pref_cover_letter,
                interview_qa=user.pref_interview_qa,
                portfolio=user.pref_portfolio,
                has_skills=any(skill.strip() for skill in user.skills_json or []),
            )

        return await self._run(load)

    async def get_cv_data(self, user_id: str) -> CVData:
        def load(repo: Repository) -> CVData:
            user = _require_user(repo, user_id)
            return CVData(
                user=to_user_profile(user),
                work_experiences=[to_work_experience(exp) for exp in repo.list_experiences(user_id)],
                projects=[
                    Project(
                        name=project.name,
                        description=project.description,
                        technologies=list(project.technologies_json or []),
                        url=project.url,
                    )
                    for project in repo.list_projects(user_id)
                ],
                educations=[
                    Education(
                        degree=edu.degree,
                        field=edu.field_of_study,
                        institution=edu.institution,
                        start_date=edu.start_date,
                        end_date=edu.end_date,
                    )
                    for edu in repo.list_educations(user_id)
                ],
            )

        return await self._run(load)

    async def persist_analysis(self, result: AnalysisResult, *, user_id: str, job_url: str) -> SavedJob:
        def save(repo: Repository) -> SavedJob:
            job = repo.upsert_saved_job(user_id, job_url, result)
            return SavedJob(id=job.id, user_id=job.user_id, job_url=job.url, title=job.title, company=job.company)

        return await self._run(save)

    async def create_or_get_thread(self, user_id: str, job_url: str, title: str, company: str) -> ChatThread:
        def save(repo: Repository) -> ChatThread:
            thread = repo.get_or_create_thread(user_id, job_url, title, company)
            return ChatThread(
                id=thread.id,
                user_id=thread.user_id,
                job_url=thread.job_url,
                title=thread.title,
                company=thread.company,
            )

        return await self._run(save)

    async def create_analysis_messages(
        self,
        thread_id: int,
        *,
        job_description: str,
        result: AnalysisResult,
        user_skills: list[str],
        job_url: str,
        user_id: str,
    ) -> list[int]:
        def save(repo: Repository) -> list[int]:
            request = repo.add_message(
                thread_id,
                role="user",
                kind="job_description",
                content=job_description,
                payload_json={"job_url": job_url, "user_id": user_id},
            )
            analysis = repo.add_message(
                thread_id,
                role="assistant",
                kind="job_analysis",
                content=analysis_summary(result),
                payload_json={
                    "analysis": result.model_dump(mode="json", exclude={"operations"}),
                    "user_skills": list(user_skills),
                },
            )
            return [request.id, analysis.id]

        return await self._run(save)

    async def save_tailored_cv(
        self, cv: TailoredCV, *, user_id: str, thread_id: int | None, job: JobInfo
    ) -> int:
        def save(repo: Repository) -> int:
            return repo.create_tailored_cv(
                user_id=user_id,
                thread_id=thread_id,
                job_title=job.title,
                company=job.company,
                cv=cv,
            ).id

        return await self._run(save)

    async def create_content_messages(
        self,
        thread_id: int,
        *,
        cover_letter: str | None,
        cv: TailoredCV | None,
        interview_qa: list[InterviewQABatch] | None,
        user_id: str,
    ) -> list[int]:
        def save(repo: Repository) -> list[int]:
            ids: list[int] = []
            if cover_letter:
                ids.append(
                    repo.add_message(thread_id, role="assistant", kind="cover_letter", content=cover_letter).id
                )
            if cv is not None:
                ids.append(
                    repo.add_message(
                        thread_id,
                        role="assistant",
                        kind="tailored_cv",
                        content=cv.summary,
                        payload_json={"cv": cv.model_dump(mode="json")},
                    ).id
                )
            if interview_qa:
                ids.append(
                    repo.add_message(
                        thread_id,
                        role="assistant",
                        kind="interview_qa",
                        content=f"{sum(len(batch.items) for batch in interview_qa)} interview questions",
                        payload_json={"batches": [batch.model_dump(mode="json") for batch in interview_qa]},
                    ).id
                )
            logger.debug("Created %s content messages thread_id=%s user_id=%s", len(ids), thread_id, user_id)
            return ids

        return await self._run(save)

    async def portfolio_exists(self, thread_id: int) -> bool:
        return await self._run(lambda repo: repo.get_portfolio_for_thread(thread_id) is not None)

    async def save_portfolio(self, *, thread_id: int, user_id: str, html: str, title: str) -> int:
        def save(repo: Repository) -> int:
            portfolio = repo.create_portfolio(thread_id=thread_id, user_id=user_id, title=title, html=html)
            repo.add_message(
                thread_id,
                role="assistant",
                kind="portfolio",
                content=title or "Portfolio",
                payload_json={"portfolio_id": portfolio.id},
            )
            return portfolio.id

        return await self._run(save)

    async def deduct_credits(self, amount: int, reason: str, user_id: str, cost_info: dict[str, Any]) -> bool:
        return await self._run(lambda repo: repo.deduct_credits(user_id, amount, reason, cost_info))


def _require_user(repo: Repository, user_id: str) -> User:
    user = repo.get_user(user_id)
    if user is None:
        raise LookupError(f"user {user_id} not found")
    return user


def to_user_profile(user: User) -> UserProfile:
    return UserProfile(
        full_name=user.full_name,
        email=user.email,
        headline=user.headline,
        summary=user.summary,
        location=user.location,
        linkedin=user.linkedin,
        phone=user.phone,
        website=user.website,
        skills=[skill for skill in user.skills_json or [] if isinstance(skill, str)],
    )


def to_work_experience(experience: Experience) -> WorkExperience:
    return WorkExperience(
        position=experience.position,
        company=experience.company,
        start_date=experience.start_date,
        end_date=experience.end_date,
        current=experience.is_current,
        description=experience.description,
    )


def analysis_summary(result: AnalysisResult) -> str:
    info = result.job_info
    lines = [" at ".join(part for part in (info.title, info.company) if part) or "Job analysis"]
    if info.location:
        lines.append(f"Location: {info.location}")
    if result.job_skills:
        lines.append(f"Skills: {', '.join(result.job_skills)}")
    match = result.match_analysis
    if match.match_percentage or match.matching_skills:
        lines.append(f"Match: {match.match_percentage}%")
    if match.reasoning:
        lines.append(match.reasoning)
    return "\n".join(lines)
