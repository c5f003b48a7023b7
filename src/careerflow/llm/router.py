from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from careerflow.config import Settings, get_settings
from careerflow.core.job_fetcher import fetch_job_text, is_url
from careerflow.core.scoring import skills_overlap_score
from careerflow.llm.prompts import (
    COVER_LETTER_PROMPT,
    EXPERIENCE_REPHRASE_PROMPT,
    INTERVIEW_QA_PROMPT,
    JOB_PARSE_PROMPT,
    JSON_SYSTEM_PROMPT,
    PORTFOLIO_PROMPT,
    PORTFOLIO_SYSTEM_PROMPT,
    SIMILARITY_SCORE_PROMPT,
    SKILL_EXTRACTION_PROMPT,
    SKILL_MATCH_PROMPT,
    SKILLS_SCORE_PROMPT,
    TAILORED_CV_PROMPT,
)
from careerflow.llm.providers import ProviderNotConfiguredError, ProviderPool
from careerflow.types import (
    AnalysisResult,
    CVData,
    GeneratedContent,
    GenerationOutput,
    JobInfo,
    MatchAnalysis,
    OperationUsage,
    UsageMetrics,
    UserProfile,
    WorkExperience,
)

logger = logging.getLogger(__name__)

JOB_TEXT_LIMIT = 20000
INTERVIEW_QA_COUNT = 5
INTERVIEW_QA_FOCUS = {
    1: "technical depth on the required skills",
    2: "behavioural and situational questions",
    3: "system design and problem solving",
    4: "role and company fit",
    5: "career goals and growth",
}


class LLMRouter:
    """Routes job analysis, content generation and semantic scoring to the configured providers.

    DeepSeek handles analysis, writing and scoring; Gemini renders portfolios.
    """

    def __init__(self, settings: Settings | None = None, pool: ProviderPool | None = None):
        self.settings = settings or get_settings()
        self.pool = pool or ProviderPool(self.settings)

    async def analyze(
        self,
        job_input: str,
        *,
        user_id: str,
        skills: list[str],
        profile: UserProfile,
    ) -> AnalysisResult:
        operations: list[OperationUsage] = []
        url_input = is_url(job_input)
        if url_input:
            job_text = await asyncio.to_thread(
                fetch_job_text, job_input.strip(), self.settings.job_fetch_timeout_sec
            )
            operations.append(OperationUsage(operation="scrape", usage=UsageMetrics(provider="scraper")))
            if not job_text.strip():
                raise ValueError(f"No text could be fetched from {job_input}")
        else:
            job_text = job_input

        provider = self.pool.deepseek()
        data, usage = await provider.complete_json(
            prompt=JOB_PARSE_PROMPT.format(job_text=job_text[:JOB_TEXT_LIMIT]),
            system=JSON_SYSTEM_PROMPT,
            temperature=0.1,
        )
        operations.append(OperationUsage(operation="parse", usage=usage))
        if not data:
            raise ValueError("Job parse returned no structured data")

        job_info = JobInfo.model_validate(_normalize_job_payload(data))
        if not job_info.description:
            job_info.description = job_text[:JOB_TEXT_LIMIT]

        job_skills = list(job_info.skills)
        if not job_skills:
            job_skills = await self._extract_skills(job_info.description, operations)

        match = MatchAnalysis()
        if skills and job_skills:
            match = await self._skill_match(skills, job_skills, job_info.description, operations)

        logger.info(
            "Analyzed job user_id=%s title=%s company=%s skills=%s match=%s",
            user_id,
            job_info.title,
            job_info.company,
            len(job_skills),
            match.match_percentage,
        )
        return AnalysisResult(
            job_info=job_info,
            job_skills=job_skills,
            match_analysis=match,
            is_url_input=url_input,
            operations=operations,
        )

    async def _extract_skills(self, description: str, operations: list[OperationUsage]) -> list[str]:
        try:
            data, usage = await self.pool.deepseek().complete_json(
                prompt=SKILL_EXTRACTION_PROMPT.format(description=description[:JOB_TEXT_LIMIT]),
                system=JSON_SYSTEM_PROMPT,
                temperature=0.1,
            )
        except Exception as exc:
            logger.warning("Skill extraction failed error=%s", exc)
            return []
        operations.append(OperationUsage(operation="extract_skills", usage=usage))
        return _string_list(data.get("skills"))

    async def _skill_match(
        self,
        user_skills: list[str],
        job_skills: list[str],
        description: str,
        operations: list[OperationUsage],
    ) -> MatchAnalysis:
        try:
            data, usage = await self.pool.deepseek().complete_json(
                prompt=SKILL_MATCH_PROMPT.format(
                    user_skills=", ".join(user_skills),
                    job_skills=", ".join(job_skills),
                    description=description[:JOB_TEXT_LIMIT],
                ),
                system=JSON_SYSTEM_PROMPT,
                temperature=0.2,
            )
        except Exception as exc:
            logger.warning("Skill match failed error=%s; falling back to heuristic", exc)
            return heuristic_match_analysis(user_skills, job_skills)

        operations.append(OperationUsage(operation="skill_match", usage=usage))
        try:
            return MatchAnalysis(
                match_percentage=max(0, min(100, int(data.get("match_percentage", data.get("matchPercentage", 0))))),
                matching_skills=_string_list(data.get("matching_skills", data.get("matchingSkills"))),
                suggested_skills=_string_list(data.get("suggested_skills", data.get("suggestedSkills"))),
                reasoning=str(data.get("reasoning", "")),
            )
        except (TypeError, ValueError):
            logger.warning("Invalid skill match payload; falling back to heuristic")
            return heuristic_match_analysis(user_skills, job_skills)

    async def generate_cover_letter(self, *, profile: UserProfile, job: JobInfo) -> GenerationOutput:
        prompt = COVER_LETTER_PROMPT.format(
            profile_json=profile.model_dump_json(indent=2),
            job_json=job.model_dump_json(indent=2),
        )
        try:
            response = await self.pool.deepseek().complete_text(prompt=prompt, temperature=0.7)
        except ProviderNotConfiguredError:
            raise
        except Exception as exc:
            logger.warning("Cover letter call failed error=%s; returning template letter", exc)
            return GenerationOutput(content=fallback_cover_letter(profile, job))

        text = response.content.strip()
        if not text:
            logger.warning("Cover letter call returned empty text; returning template letter")
            text = fallback_cover_letter(profile, job)
        return GenerationOutput(content=text, usage=response.usage)

    async def generate_tailored_cv(self, *, cv_data: CVData, job: JobInfo) -> GenerationOutput:
        prompt = TAILORED_CV_PROMPT.format(
            cv_json=_indexed_cv_json(cv_data),
            job_json=job.model_dump_json(indent=2),
        )
        response = await self.pool.deepseek().complete_text(
            prompt=prompt, system=JSON_SYSTEM_PROMPT, temperature=0.4, json_mode=True
        )
        return GenerationOutput(content=response.content, usage=response.usage)

    async def rephrase_experiences(
        self, *, experiences: dict[int, WorkExperience], job: JobInfo | None
    ) -> GenerationOutput:
        payload = {str(idx): exp.model_dump() for idx, exp in sorted(experiences.items())}
        prompt = EXPERIENCE_REPHRASE_PROMPT.format(
            indices=", ".join(str(idx) for idx in sorted(experiences)),
            experiences_json=json.dumps(payload, ensure_ascii=True, indent=2),
            job_json=(job or JobInfo()).model_dump_json(indent=2),
        )
        data, usage = await self.pool.deepseek().complete_json(
            prompt=prompt, system=JSON_SYSTEM_PROMPT, temperature=0.3
        )
        return GenerationOutput(content=data, usage=usage)

    async def generate_interview_qa(
        self, *, profile: UserProfile, job: JobInfo, batch_index: int = 1
    ) -> GenerationOutput:
        prompt = INTERVIEW_QA_PROMPT.format(
            batch_index=batch_index,
            focus=INTERVIEW_QA_FOCUS.get(batch_index, INTERVIEW_QA_FOCUS[1]),
            count=INTERVIEW_QA_COUNT,
            profile_json=profile.model_dump_json(indent=2),
            job_json=job.model_dump_json(indent=2),
        )
        try:
            data, usage = await self.pool.deepseek().complete_json(
                prompt=prompt, system=JSON_SYSTEM_PROMPT, temperature=0.6
            )
        except ProviderNotConfiguredError:
            raise
        except Exception as exc:
            logger.warning("Interview QA call failed error=%s; returning fallback questions", exc)
            return GenerationOutput(content={"items": fallback_interview_qa(job)})

        items = data.get("items")
        if not isinstance(items, list) or not items:
            logger.warning("Interview QA payload had no items; returning fallback questions")
            return GenerationOutput(content={"items": fallback_interview_qa(job)}, usage=usage)
        if len(items) != INTERVIEW_QA_COUNT:
            logger.warning("Expected %s interview QA items, got %s", INTERVIEW_QA_COUNT, len(items))
        return GenerationOutput(content={"items": items}, usage=usage)

    async def generate_portfolio(
        self, *, cv_data: CVData, job: JobInfo, content: GeneratedContent
    ) -> GenerationOutput:
        prompt = PORTFOLIO_PROMPT.format(
            cv_json=cv_data.model_dump_json(indent=2),
            job_json=job.model_dump_json(indent=2),
            tailored_summary=content.cv.summary if content.cv else "",
        )
        response = await self.pool.gemini().complete_text(
            prompt=prompt, system=PORTFOLIO_SYSTEM_PROMPT, temperature=0.9
        )
        return GenerationOutput(content=ensure_html_contract(response.content), usage=response.usage)

    async def score_skills(self, candidate_skills: list[str], target_skills: list[str]) -> int:
        data, _ = await self.pool.deepseek().complete_json(
            prompt=SKILLS_SCORE_PROMPT.format(
                candidate_skills=", ".join(candidate_skills),
                target_skills=", ".join(target_skills),
            ),
            system=JSON_SYSTEM_PROMPT,
            temperature=0.0,
        )
        return _score_value(data)

    async def score_similarity(self, text: str, target_text: str) -> int:
        data, _ = await self.pool.deepseek().complete_json(
            prompt=SIMILARITY_SCORE_PROMPT.format(
                text=text[:JOB_TEXT_LIMIT], target_text=target_text[:JOB_TEXT_LIMIT]
            ),
            system=JSON_SYSTEM_PROMPT,
            temperature=0.0,
        )
        return _score_value(data)


def _normalize_job_payload(data: dict[str, Any]) -> dict[str, Any]:
    aliases = {
        "experienceLevel": "experience_level",
        "employmentType": "employment_type",
        "jobFunctions": "job_functions",
    }
    payload: dict[str, Any] = {}
    for key, value in data.items():
        payload[aliases.get(key, key)] = value
    for key in ("title", "company", "location", "experience_level", "employment_type", "description"):
        value = payload.get(key)
        payload[key] = value.strip() if isinstance(value, str) else ""
    for key in ("job_functions", "industries", "skills"):
        payload[key] = _string_list(payload.get(key))
    return {key: payload[key] for key in JobInfo.model_fields if key in payload}


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _score_value(data: dict[str, Any]) -> int:
    if "score" not in data:
        raise ValueError("Scoring response missing 'score'")
    return max(0, min(100, int(round(float(data["score"])))))


def _indexed_cv_json(cv_data: CVData) -> str:
    payload = cv_data.model_dump()
    payload["work_experiences"] = [
        {"index": idx, **exp} for idx, exp in enumerate(payload["work_experiences"])
    ]
    return json.dumps(payload, ensure_ascii=True, indent=2)


def ensure_html_contract(raw: str) -> str:
    html = str(raw or "").strip()
    if not html.lower().startswith("<!doctype html>"):
        raise ValueError("Portfolio output did not start with <!DOCTYPE html>")
    if not html.lower().endswith("</html>"):
        raise ValueError("Portfolio output did not end with </html>")
    return html


def heuristic_match_analysis(user_skills: list[str], job_skills: list[str]) -> MatchAnalysis:
    user = {skill.lower().strip(): skill for skill in user_skills if skill.strip()}
    matching = [skill for skill in job_skills if skill.lower().strip() in user]
    missing = [skill for skill in job_skills if skill.lower().strip() not in user]
    return MatchAnalysis(
        match_percentage=skills_overlap_score(user_skills, job_skills),
        matching_skills=matching,
        suggested_skills=missing[:5],
        reasoning="Estimated from direct skill overlap.",
    )


def fallback_cover_letter(profile: UserProfile, job: JobInfo) -> str:
    return "\n".join(
        [
            "Dear Hiring Manager,",
            "",
            (
                f"I am writing to express my interest in the {job.title or 'advertised'} position at "
                f"{job.company or 'your company'}. Based on the job description, I believe my skills "
                "and experience align well with your requirements."
            ),
            "",
            "I look forward to the opportunity to discuss how my background can contribute to your team.",
            "",
            "Best regards,",
            profile.full_name or "Candidate",
        ]
    )


def fallback_interview_qa(job: JobInfo) -> list[dict[str, str]]:
    role = job.title or "this"
    company = job.company or "your company"
    return [
        {
            "q": f"Why are you interested in the {role} position at {company}?",
            "a": "The role aligns with my career goals and lets me contribute my skills to the team.",
        },
        {
            "q": "What relevant experience do you have?",
            "a": "I have hands-on experience with the skills and technologies named in the job description.",
        },
        {
            "q": "How do you handle challenges?",
            "a": "I break problems into manageable steps and look for solutions together with the team.",
        },
        {
            "q": "What are your strengths?",
            "a": "Problem solving, attention to detail, and working well within a team.",
        },
        {
            "q": "Where do you see yourself in 5 years?",
            "a": "Growing with the company, taking on more responsibility, and contributing to the team's success.",
        },
    ]
