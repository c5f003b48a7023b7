from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from careerflow.db.base import Base, TimestampMixin


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    headline: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="", nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    linkedin: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    website: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    skills_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    credits_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pref_cv: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    pref_cover_letter: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    pref_interview_qa: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    pref_portfolio: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Experience(TimestampMixin, Base):
    __tablename__ = "experiences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    position: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    start_date: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    end_date: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class UserProject(TimestampMixin, Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    technologies_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    url: Mapped[str] = mapped_column(String(500), default="", nullable=False)


class UserEducation(TimestampMixin, Base):
    __tablename__ = "educations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    degree: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    field_of_study: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    institution: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    start_date: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    end_date: Mapped[str] = mapped_column(String(40), default="", nullable=False)


class Job(TimestampMixin, Base):
    __tablename__ = "saved_jobs"
    __table_args__ = (UniqueConstraint("user_id", "url", name="uq_saved_jobs_user_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    experience_level: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    employment_type: Mapped[str] = mapped_column(String(120), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    skills_json: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    match_percentage: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    analysis_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class Thread(TimestampMixin, Base):
    __tablename__ = "chat_threads"
    __table_args__ = (UniqueConstraint("user_id", "job_url", name="uq_chat_threads_user_url"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    job_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)


class Message(TimestampMixin, Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("chat_threads.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), default="text", nullable=False)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class TailoredCVVersion(TimestampMixin, Base):
    __tablename__ = "tailored_cvs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    thread_id: Mapped[int | None] = mapped_column(
        ForeignKey("chat_threads.id", ondelete="SET NULL"), nullable=True, index=True
    )
    job_title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    match_before: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    match_after: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cv_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class Portfolio(TimestampMixin, Base):
    __tablename__ = "portfolios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    thread_id: Mapped[int] = mapped_column(ForeignKey("chat_threads.id", ondelete="CASCADE"), unique=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    title: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    html: Mapped[str] = mapped_column(Text, default="", nullable=False)


class CreditTransaction(TimestampMixin, Base):
    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cost_info_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
