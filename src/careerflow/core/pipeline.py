from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from careerflow.config import Settings, get_settings
from careerflow.core.billing import CreditPricing
from careerflow.core.contracts import (
    ContentGenerator,
    CreditLedger,
    JobAnalyzer,
    JobRepository,
    ProfileSource,
    SemanticScorer,
)
from careerflow.core.job_fetcher import build_job_description, primary_job_input
from careerflow.core.reconciler import PatchReconciler, minimal_cv, to_tailored_cv
from careerflow.core.scheduler import JobRecord
from careerflow.core.scoring import MatchScorer
from careerflow.core.timeouts import settle_with_timeout, with_timeout
from careerflow.types import (
    AnalysisResult,
    ChatThread,
    CVData,
    ExtractedJobData,
    GeneratedContent,
    InterviewQABatch,
    InterviewQAItem,
    JobInfo,
    MessagePreferences,
    PipelineOutcome,
    UsageMetrics,
    UserProfile,
)

logger = logging.getLogger(__name__)

StepReporter = Callable[[str, str | None], None]


class AnalysisError(RuntimeError):
    pass


class PersistenceError(RuntimeError):
    pass


@dataclass(slots=True)
class PipelineServices:
    profiles: ProfileSource
    analyzer: JobAnalyzer
    repository: JobRepository
    generator: ContentGenerator
    ledger: CreditLedger
    scorer: SemanticScorer | None = None


@dataclass(slots=True)
class _RunContext:
    user_id: str
    job_url: str
    extracted: ExtractedJobData | None
    report: StepReporter
    profile: UserProfile = field(default_factory=UserProfile)
    job: JobInfo = field(default_factory=JobInfo)
    thread: ChatThread | None = None
    cv_data: CVData | None = None
    content: GeneratedContent = field(default_factory=GeneratedContent)


class JobPipeline:
    """One job's fixed stage sequence.

    Hard stages (analysis with its single fallback, persistence) raise and fail
    the job. Every other stage logs its failure and lets the job continue.
    Stages run strictly in sequence so credit deductions never interleave.
    """

    def __init__(
        self,
        services: PipelineServices,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.services = services
        self.settings = settings or get_settings()
        self.pricing = CreditPricing(self.settings)
        self.scorer = MatchScorer(services.scorer, timeout_sec=self.settings.scoring_timeout_sec)
        self.reconciler = PatchReconciler(
            scorer=self.scorer,
            generator=services.generator,
            retry_timeout_sec=self.settings.tailored_cv_timeout_sec,
        )
        self._sleep = sleep
        self._billing_lock = asyncio.Lock()

    async def run(self, record: JobRecord, report: StepReporter) -> PipelineOutcome:
        ctx = _RunContext(
            user_id=record.key.user_id,
            job_url=record.key.target_url,
            extracted=record.extracted,
            report=report,
        )

        report("fetching_profile", None)
        ctx.profile = await self._fetch_profile(ctx.user_id)

        report("analyzing_job", None)
        analysis, used_fallback = await self._analyze(ctx)
        ctx.job = analysis.job_info.model_copy(
            update={"skills": analysis.job_skills or analysis.job_info.skills}
        )
        for operation in analysis.operations:
            await self._bill(ctx.user_id, f"Job Analysis: {operation.operation}", operation.usage)

        report("creating_chat", None)
        await self._create_chat(ctx, analysis)

        report("saving_job", None)
        try:
            saved = await settle_with_timeout(
                self.services.repository.persist_analysis(analysis, user_id=ctx.user_id, job_url=ctx.job_url),
                self.settings.persistence_timeout_sec,
                label="persist_analysis",
            )
        except Exception as exc:
            raise PersistenceError(str(exc)) from exc

        report("generating_content", None)
        await self._generate_content(ctx)

        return PipelineOutcome(
            analysis=analysis,
            saved_job=saved,
            thread=ctx.thread,
            content=ctx.content,
            used_fallback_input=used_fallback,
        )

    async def _fetch_profile(self, user_id: str) -> UserProfile:
        try:
            return await with_timeout(
                self.services.profiles.fetch_user_profile(user_id),
                self.settings.profile_timeout_sec,
                label="fetch_user_profile",
            )
        except Exception as exc:
            logger.warning("Profile fetch failed user_id=%s error=%s; continuing with empty profile", user_id, exc)
            return UserProfile()

    async def _analyze(self, ctx: _RunContext) -> tuple[AnalysisResult, bool]:
        primary = primary_job_input(ctx.job_url, ctx.extracted)
        try:
            return await self._call_analyzer(ctx, primary), False
        except Exception as exc:
            fallback = ""
            if ctx.extracted is not None and ctx.extracted.has_content():
                fallback = build_job_description(ctx.extracted)
            if not fallback:
                logger.warning("Analysis failed with no fallback input url=%s error=%s", ctx.job_url, exc)
                raise AnalysisError(str(exc)) from exc

            logger.warning("Analysis failed url=%s error=%s; retrying with extracted page text", ctx.job_url, exc)
            ctx.report("analyzing_job", "fallback_dom_text")
            try:
                return await self._call_analyzer(ctx, fallback), True
            except Exception as retry_exc:
                logger.warning("Fallback analysis failed url=%s error=%s", ctx.job_url, retry_exc)
                raise AnalysisError(str(exc)) from retry_exc

    async def _call_analyzer(self, ctx: _RunContext, job_input: str) -> AnalysisResult:
        return await with_timeout(
            self.services.analyzer.analyze(
                job_input,
                user_id=ctx.user_id,
                skills=ctx.profile.skills,
                profile=ctx.profile,
            ),
            self.settings.analysis_timeout_sec,
            label="analyze",
        )

    async def _create_chat(self, ctx: _RunContext, analysis: AnalysisResult) -> None:
        if ctx.extracted is not None and ctx.extracted.has_content():
            job_description = build_job_description(ctx.extracted) or ctx.job.description or ctx.job_url
        else:
            job_description = ctx.job.description or ctx.job_url

        repository = self.services.repository
        try:
            ctx.thread = await with_timeout(
                repository.create_or_get_thread(ctx.user_id, ctx.job_url, ctx.job.title, ctx.job.company),
                self.settings.persistence_timeout_sec,
                label="create_or_get_thread",
            )
            ctx.content.message_ids.extend(
                await with_timeout(
                    repository.create_analysis_messages(
                        ctx.thread.id,
                        job_description=job_description,
                        result=analysis,
                        user_skills=ctx.profile.skills,
                        job_url=ctx.job_url,
                        user_id=ctx.user_id,
                    ),
                    self.settings.persistence_timeout_sec,
                    label="create_analysis_messages",
                )
            )
        except Exception as exc:
            logger.warning("Chat thread/messages failed user_id=%s url=%s error=%s", ctx.user_id, ctx.job_url, exc)

    async def _generate_content(self, ctx: _RunContext) -> None:
        preferences = await self._preferences(ctx.user_id)

        if preferences.cover_letter:
            await self._soft_stage(ctx, "generating_cover_letter", self._cover_letter)
        if preferences.cv and preferences.has_skills:
            await self._soft_stage(ctx, "generating_cv", self._tailored_cv)
        elif preferences.cv:
            logger.info("Skipping CV generation user_id=%s: no skills on profile", ctx.user_id)
        if preferences.interview_qa and preferences.has_skills:
            await self._soft_stage(ctx, "generating_interview_qa", self._interview_qa)
        elif preferences.interview_qa:
            logger.info("Skipping interview QA user_id=%s: no skills on profile", ctx.user_id)

        await self._content_messages(ctx)

        if self.settings.portfolio_generation_enabled and preferences.portfolio:
            await self._soft_stage(ctx, "generating_portfolio", self._portfolio)

    async def _preferences(self, user_id: str) -> MessagePreferences:
        try:
            return await with_timeout(
                self.services.profiles.get_message_preferences(user_id),
                self.settings.profile_timeout_sec,
                label="get_message_preferences",
            )
        except Exception as exc:
            logger.warning("Preference lookup failed user_id=%s error=%s; using defaults", user_id, exc)
            return MessagePreferences(has_skills=False)

    async def _soft_stage(
        self, ctx: _RunContext, step: str, stage: Callable[[_RunContext], Awaitable[None]]
    ) -> None:
        ctx.report(step, None)
        try:
            await stage(ctx)
        except Exception as exc:
            logger.warning("Stage %s failed user_id=%s error=%s", step, ctx.user_id, exc)
            ctx.content.errors.append(f"{step}: {exc}")

    async def _cover_letter(self, ctx: _RunContext) -> None:
        output = await with_timeout(
            self.services.generator.generate_cover_letter(profile=ctx.profile, job=ctx.job),
            self.settings.cover_letter_timeout_sec,
            label="generate_cover_letter",
        )
        await self._bill(ctx.user_id, "Cover Letter", output.usage)
        text = str(output.content or "").strip()
        if text:
            ctx.content.cover_letter = text
        else:
            logger.warning("Cover letter generation returned empty content user_id=%s", ctx.user_id)

    async def _load_cv_data(self, ctx: _RunContext) -> CVData:
        if ctx.cv_data is None:
            ctx.cv_data = await with_timeout(
                self.services.profiles.get_cv_data(ctx.user_id),
                self.settings.profile_timeout_sec,
                label="get_cv_data",
            )
        return ctx.cv_data

    async def _tailored_cv(self, ctx: _RunContext) -> None:
        cv_data = await self._load_cv_data(ctx)
        try:
            output = await with_timeout(
                self.services.generator.generate_tailored_cv(cv_data=cv_data, job=ctx.job),
                self.settings.tailored_cv_timeout_sec,
                label="generate_tailored_cv",
            )
            await self._bill(ctx.user_id, "CV Tailoring", output.usage)
            result = await self.reconciler.reconcile(cv_data, output.content, job=ctx.job)
            for operation in result.operations:
                await self._bill(ctx.user_id, operation.operation, operation.usage)
            cv = to_tailored_cv(result)
        except Exception as exc:
            logger.warning("CV tailoring failed user_id=%s error=%s; using untailored CV", ctx.user_id, exc)
            cv = minimal_cv(cv_data, await self.scorer.score_cv(cv_data, ctx.job))

        ctx.content.cv = cv
        try:
            await with_timeout(
                self.services.repository.save_tailored_cv(
                    cv,
                    user_id=ctx.user_id,
                    thread_id=ctx.thread.id if ctx.thread else None,
                    job=ctx.job,
                ),
                self.settings.persistence_timeout_sec,
                label="save_tailored_cv",
            )
        except Exception as exc:
            logger.warning("Saving tailored CV failed user_id=%s error=%s", ctx.user_id, exc)

    async def _interview_qa(self, ctx: _RunContext) -> None:
        output = await with_timeout(
            self.services.generator.generate_interview_qa(profile=ctx.profile, job=ctx.job, batch_index=1),
            self.settings.interview_qa_timeout_sec,
            label="generate_interview_qa",
        )
        await self._bill(ctx.user_id, "Interview QA", output.usage)
        items = _qa_items(output.content)
        if items:
            ctx.content.interview_qa = [InterviewQABatch(batch_index=1, items=items)]
        else:
            logger.warning("Interview QA generation returned no items user_id=%s", ctx.user_id)

    async def _content_messages(self, ctx: _RunContext) -> None:
        content = ctx.content
        if ctx.thread is None or not (content.cover_letter or content.cv or content.interview_qa):
            return
        try:
            ids = await with_timeout(
                self.services.repository.create_content_messages(
                    ctx.thread.id,
                    cover_letter=content.cover_letter,
                    cv=content.cv,
                    interview_qa=content.interview_qa,
                    user_id=ctx.user_id,
                ),
                self.settings.persistence_timeout_sec,
                label="create_content_messages",
            )
            content.message_ids.extend(ids)
        except Exception as exc:
            logger.warning("Content messages failed user_id=%s error=%s", ctx.user_id, exc)

    async def _portfolio(self, ctx: _RunContext) -> None:
        if ctx.thread is None:
            logger.info("Skipping portfolio user_id=%s: no chat thread", ctx.user_id)
            return

        repository = self.services.repository
        exists = await with_timeout(
            repository.portfolio_exists(ctx.thread.id),
            self.settings.persistence_timeout_sec,
            label="portfolio_exists",
        )
        if exists:
            logger.info("Portfolio already exists thread_id=%s; skipping", ctx.thread.id)
            return

        cv_data = await self._load_cv_data(ctx)
        await self._sleep(self.settings.portfolio_rate_limit_delay_sec)
        output = await with_timeout(
            self.services.generator.generate_portfolio(cv_data=cv_data, job=ctx.job, content=ctx.content),
            self.settings.portfolio_timeout_sec,
            label="generate_portfolio",
        )
        await self._bill(ctx.user_id, "Portfolio Generation", output.usage)
        ctx.content.portfolio_id = await with_timeout(
            repository.save_portfolio(
                thread_id=ctx.thread.id,
                user_id=ctx.user_id,
                html=str(output.content),
                title=" at ".join(part for part in (ctx.job.title, ctx.job.company) if part),
            ),
            self.settings.persistence_timeout_sec,
            label="save_portfolio",
        )

    async def _bill(self, user_id: str, reason: str, usage: UsageMetrics) -> None:
        quote = self.pricing.quote(usage)
        if quote.credits <= 0:
            return
        try:
            async with self._billing_lock:
                deducted = await settle_with_timeout(
                    self.services.ledger.deduct_credits(quote.credits, reason, user_id, quote.as_cost_info(usage)),
                    self.settings.persistence_timeout_sec,
                    label="deduct_credits",
                )
        except Exception as exc:
            logger.warning("Credit deduction errored user_id=%s reason=%s error=%s", user_id, reason, exc)
            return
        if not deducted:
            logger.warning(
                "Credit deduction rejected user_id=%s reason=%s credits=%s", user_id, reason, quote.credits
            )


def _qa_items(content: object) -> list[InterviewQAItem]:
    if isinstance(content, dict):
        content = content.get("items")
    if not isinstance(content, list):
        return []

    items: list[InterviewQAItem] = []
    for raw in content:
        if isinstance(raw, InterviewQAItem):
            items.append(raw)
        elif isinstance(raw, dict) and isinstance(raw.get("q"), str) and isinstance(raw.get("a"), str):
            items.append(InterviewQAItem(q=raw["q"], a=raw["a"]))
    return items
