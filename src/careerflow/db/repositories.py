from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from careerflow.db.models import (
    CreditTransaction,
    Experience,
    Job,
    Message,
    Portfolio,
    TailoredCVVersion,
    Thread,
    User,
    UserEducation,
    UserProject,
)
from careerflow.types import AnalysisResult, TailoredCV

PREFERENCE_FIELDS = {
    "cv": "pref_cv",
    "cover_letter": "pref_cover_letter",
    "interview_qa": "pref_interview_qa",
    "portfolio": "pref_portfolio",
}


class Repository:
    def __init__(self, session: Session):
        self.session = session

    def create_user(
        self,
        user_id: str,
        *,
        full_name: str = "",
        email: str = "",
        summary: str = "",
        headline: str = "",
        skills: list[str] | None = None,
        credits_balance: int = 0,
    ) -> User:
        user = User(
            id=user_id,
            full_name=full_name,
            email=email,
            summary=summary,
            headline=headline,
            skills_json=list(skills or []),
            credits_balance=credits_balance,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_user(self, user_id: str) -> User | None:
        return self.session.get(User, user_id)

    def list_users(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.created_at.asc())).all())

    def update_user(self, user_id: str, values: dict[str, Any]) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError(f"user {user_id} not found")
        for key, value in values.items():
            setattr(user, key, value)
        self.session.commit()
        self.session.refresh(user)
        return user

    def set_message_preferences(self, user_id: str, **flags: bool) -> User:
        unknown = set(flags) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValueError(f"unknown preference(s): {sorted(unknown)}")
        return self.update_user(user_id, {PREFERENCE_FIELDS[key]: value for key, value in flags.items()})

    def add_experience(
        self,
        user_id: str,
        *,
        position: str,
        company: str,
        description: str = "",
        start_date: str = "",
        end_date: str = "",
        is_current: bool = False,
    ) -> Experience:
        sort_order = len(self.list_experiences(user_id))
        experience = Experience(
            user_id=user_id,
            position=position,
            company=company,
            description=description,
            start_date=start_date,
            end_date=end_date,
            is_current=is_current,
            sort_order=sort_order,
        )
        self.session.add(experience)
        self.session.commit()
        self.session.refresh(experience)
        return experience

    def list_experiences(self, user_id: str) -> list[Experience]:
        statement = (
            select(Experience)
            .where(Experience.user_id == user_id)
            .order_by(Experience.sort_order.asc(), Experience.id.asc())
        )
        return list(self.session.scalars(statement).all())

    def add_project(
        self,
        user_id: str,
        *,
        name: str,
        description: str = "",
        technologies: list[str] | None = None,
        url: str = "",
    ) -> UserProject:
        project = UserProject(
            user_id=user_id,
            name=name,
            description=description,
            technologies_json=list(technologies or []),
            url=url,
        )
        self.session.add(project)
        self.session.commit()
        self.session.refresh(project)
        return project

    def list_projects(self, user_id: str) -> list[UserProject]:
        statement = select(UserProject).where(UserProject.user_id == user_id).order_by(UserProject.id.asc())
        return list(self.session.scalars(statement).all())

    def add_education(self, user_id: str, **values: str) -> UserEducation:
        education = UserEducation(user_id=user_id, **values)
        self.session.add(education)
        self.session.commit()
        self.session.refresh(education)
        return education

    def list_educations(self, user_id: str) -> list[UserEducation]:
        statement = (
            select(UserEducation).where(UserEducation.user_id == user_id).order_by(UserEducation.id.asc())
        )
        return list(self.session.scalars(statement).all())

    def upsert_saved_job(self, user_id: str, url: str, result: AnalysisResult) -> Job:
        job = self.get_saved_job(user_id, url)
        if job is None:
            job = Job(user_id=user_id, url=url)
            self.session.add(job)

        info = result.job_info
        job.title = info.title
        job.company = info.company
        job.location = info.location
        job.experience_level = info.experience_level
        job.employment_type = info.employment_type
        job.description = info.description
        job.skills_json = list(result.job_skills or info.skills)
        job.match_percentage = result.match_analysis.match_percentage
        job.analysis_json = result.model_dump(mode="json", exclude={"operations"})

        self.session.commit()
        self.session.refresh(job)
        return job

    def get_saved_job(self, user_id: str, url: str) -> Job | None:
        return self.session.scalar(select(Job).where(Job.user_id == user_id, Job.url == url))

    def list_saved_jobs(self, user_id: str, limit: int = 50) -> list[Job]:
        statement = select(Job).where(Job.user_id == user_id).order_by(Job.created_at.desc()).limit(limit)
        return list(self.session.scalars(statement).all())

    def get_or_create_thread(self, user_id: str, job_url: str, title: str = "", company: str = "") -> Thread:
        thread = self.session.scalar(
            select(Thread).where(Thread.user_id == user_id, Thread.job_url == job_url)
        )
        if thread is None:
            thread = Thread(user_id=user_id, job_url=job_url, title=title, company=company)
            self.session.add(thread)
        else:
            thread.title = title or thread.title
            thread.company = company or thread.company

        self.session.commit()
        self.session.refresh(thread)
        return thread

    def add_message(
        self,
        thread_id: int,
        *,
        role: str,
        kind: str,
        content: str,
        payload_json: dict[str, Any] | None = None,
    ) -> Message:
        message = Message(
            thread_id=thread_id,
            role=role,
            kind=kind,
            content=content,
            payload_json=payload_json or {},
        )
        self.session.add(message)
        self.session.commit()
        self.session.refresh(message)
        return message

    def list_messages(self, thread_id: int) -> list[Message]:
        statement = select(Message).where(Message.thread_id == thread_id).order_by(Message.id.asc())
        return list(self.session.scalars(statement).all())

    def create_tailored_cv(
        self,
        *,
        user_id: str,
        thread_id: int | None,
        job_title: str,
        company: str,
        cv: TailoredCV,
    ) -> TailoredCVVersion:
        record = TailoredCVVersion(
            user_id=user_id,
            thread_id=thread_id,
            job_title=job_title,
            company=company,
            match_before=cv.match_before,
            match_after=cv.match_after,
            cv_json=cv.model_dump(mode="json"),
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def list_tailored_cvs(self, user_id: str) -> list[TailoredCVVersion]:
        statement = (
            select(TailoredCVVersion)
            .where(TailoredCVVersion.user_id == user_id)
            .order_by(TailoredCVVersion.id.desc())
        )
        return list(self.session.scalars(statement).all())

    def get_portfolio_for_thread(self, thread_id: int) -> Portfolio | None:
        return self.session.scalar(select(Portfolio).where(Portfolio.thread_id == thread_id))

    def create_portfolio(self, *, thread_id: int, user_id: str, title: str, html: str) -> Portfolio:
        portfolio = Portfolio(thread_id=thread_id, user_id=user_id, title=title, html=html)
        self.session.add(portfolio)
        self.session.commit()
        self.session.refresh(portfolio)
        return portfolio

    def add_credits(self, user_id: str, amount: int, reason: str = "Top up") -> CreditTransaction:
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError(f"user {user_id} not found")
        user.credits_balance += amount
        transaction = CreditTransaction(
            user_id=user_id, amount=amount, reason=reason, balance_after=user.credits_balance
        )
        self.session.add(transaction)
        self.session.commit()
        self.session.refresh(transaction)
        return transaction

    def deduct_credits(
        self, user_id: str, amount: int, reason: str, cost_info: dict[str, Any] | None = None
    ) -> bool:
        """Debit ``amount`` credits; returns False without writing when the user cannot cover it.

        The balance check and the debit are one conditional UPDATE, so a stale
        session can never overdraw the account.
        """
        if amount < 0:
            raise ValueError("credit amount must be non-negative")

        debited = self.session.execute(
            update(User)
            .where(User.id == user_id, User.credits_balance >= amount)
            .values(credits_balance=User.credits_balance - amount)
            .execution_options(synchronize_session=False)
        )
        if debited.rowcount == 0:
            self.session.rollback()
            return False

        balance = self.session.scalar(select(User.credits_balance).where(User.id == user_id))
        self.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=-amount,
                reason=reason,
                balance_after=balance,
                cost_info_json=cost_info or {},
            )
        )
        self.session.commit()
        return True

    def list_credit_transactions(self, user_id: str) -> list[CreditTransaction]:
        statement = (
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.id.asc())
        )
        return list(self.session.scalars(statement).all())
