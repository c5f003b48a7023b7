from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

JobStatus = Literal["queued", "running", "success", "error"]
ProviderName = Literal["deepseek", "gemini", "scraper", "none"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"success", "error"})


class ExtractedJobData(BaseModel):
    """Page data captured by the caller before submission."""

    title: str = ""
    company: str = ""
    location: str = ""
    employment_type: str = ""
    experience_level: str = ""
    about_the_job: str = ""
    description: str = ""
    text: str = ""

    def has_content(self) -> bool:
        return any(str(value).strip() for value in self.model_dump().values())


class UserProfile(BaseModel):
    full_name: str = ""
    email: str = ""
    headline: str = ""
    summary: str = ""
    location: str = ""
    linkedin: str = ""
    phone: str = ""
    website: str = ""
    skills: list[str] = Field(default_factory=list)


class MessagePreferences(BaseModel):
    cv: bool = True
    cover_letter: bool = True
    interview_qa: bool = True
    portfolio: bool = True
    has_skills: bool = False


class WorkExperience(BaseModel):
    position: str = ""
    company: str = ""
    start_date: str = ""
    end_date: str = ""
    current: bool = False
    description: str = ""


class Project(BaseModel):
    name: str = ""
    description: str = ""
    technologies: list[str] = Field(default_factory=list)
    url: str = ""


class Education(BaseModel):
    degree: str = ""
    field: str = ""
    institution: str = ""
    start_date: str = ""
    end_date: str = ""


class CVData(BaseModel):
    user: UserProfile = Field(default_factory=UserProfile)
    work_experiences: list[WorkExperience] = Field(default_factory=list)
    projects: list[Project] = Field(default_factory=list)
    educations: list[Education] = Field(default_factory=list)


class JobInfo(BaseModel):
    title: str = ""
    company: str = ""
    location: str = ""
    description: str = ""
    experience_level: str = ""
    employment_type: str = ""
    job_functions: list[str] = Field(default_factory=list)
    industries: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)


class MatchAnalysis(BaseModel):
    match_percentage: int = 0
    matching_skills: list[str] = Field(default_factory=list)
    suggested_skills: list[str] = Field(default_factory=list)
    reasoning: str = ""


class UsageMetrics(BaseModel):
    provider: ProviderName = "none"
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0


class ModelResponse(BaseModel):
    content: str
    usage: UsageMetrics = Field(default_factory=UsageMetrics)
    raw: dict[str, Any] = Field(default_factory=dict)


class OperationUsage(BaseModel):
    operation: str
    usage: UsageMetrics = Field(default_factory=UsageMetrics)


class AnalysisResult(BaseModel):
    job_info: JobInfo = Field(default_factory=JobInfo)
    job_skills: list[str] = Field(default_factory=list)
    match_analysis: MatchAnalysis = Field(default_factory=MatchAnalysis)
    is_url_input: bool = False
    operations: list[OperationUsage] = Field(default_factory=list)


class SavedJob(BaseModel):
    id: int
    user_id: str
    job_url: str
    title: str = ""
    company: str = ""


class ChatThread(BaseModel):
    id: int
    user_id: str
    job_url: str
    title: str = ""
    company: str = ""


class GenerationOutput(BaseModel):
    content: Any = None
    usage: UsageMetrics = Field(default_factory=UsageMetrics)


class Highlight(BaseModel):
    text: str
    source: str = "experience"
    index: int | None = None


class ExperiencePatch(BaseModel):
    index: int
    description: str


class GenerationPatch(BaseModel):
    summary: str = ""
    focus_summary: str | None = None
    skills: list[str] = Field(default_factory=list)
    highlights: list[Highlight] = Field(default_factory=list)
    experiences: list[ExperiencePatch] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    validated_patch: GenerationPatch
    match_before: int = 0
    match_after: int = 0
    backfilled_indices: list[int] = Field(default_factory=list)
    retry_adopted: bool = False
    operations: list[OperationUsage] = Field(default_factory=list)

    @field_validator("match_before", "match_after")
    @classmethod
    def validate_score(cls, value: int) -> int:
        if value < 0 or value > 100:
            raise ValueError("match score must be between 0 and 100")
        return value


class TailoredCV(BaseModel):
    summary: str
    focus_summary: str | None = None
    skills: list[str]
    highlights: list[str] = Field(default_factory=list)
    experiences: list[ExperiencePatch] = Field(default_factory=list)
    match_before: int = 0
    match_after: int = 0
    changes: list[str] = Field(default_factory=list)


class InterviewQAItem(BaseModel):
    q: str
    a: str


class InterviewQABatch(BaseModel):
    batch_index: int = 1
    items: list[InterviewQAItem] = Field(default_factory=list)


class GeneratedContent(BaseModel):
    cover_letter: str | None = None
    cv: TailoredCV | None = None
    interview_qa: list[InterviewQABatch] | None = None
    portfolio_id: int | None = None
    message_ids: list[int] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class PipelineOutcome(BaseModel):
    analysis: AnalysisResult
    saved_job: SavedJob
    thread: ChatThread | None = None
    content: GeneratedContent = Field(default_factory=GeneratedContent)
    used_fallback_input: bool = False


class ProgressEvent(BaseModel):
    user_id: str
    request_id: str
    target_url: str
    status: JobStatus
    current_step: str
    step_detail: str | None = None
    error: str | None = None
    title: str = ""
    company: str = ""
    updated_at: float = 0.0
    final: bool = False
