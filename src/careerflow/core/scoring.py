from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from careerflow.core.contracts import SemanticScorer
from careerflow.core.timeouts import with_timeout
from careerflow.types import CVData, JobInfo

logger = logging.getLogger(__name__)

SKILLS_WEIGHT = 0.4
SUMMARY_WEIGHT = 0.3
EXPERIENCE_WEIGHT = 0.3

_TOKEN_PATTERN = re.compile(r"[a-z0-9][a-z0-9+#.]*")
_STOPWORDS = frozenset(
    {
        "and", "the", "for", "with", "you", "our", "are", "will", "your", "from",
        "that", "this", "have", "has", "into", "who", "all", "any", "can", "was",
    }
)


def clamp_score(value: float) -> int:
    return max(0, min(100, int(round(value))))


def normalize_skill(value: str) -> str:
    return " ".join(value.lower().split())


def skills_overlap_score(candidate_skills: list[str], target_skills: list[str]) -> int:
    """Share of target skills covered by a candidate skill (substring match either way)."""
    target = [normalize_skill(s) for s in target_skills if s and s.strip()]
    candidate = [normalize_skill(s) for s in candidate_skills if s and s.strip()]
    if not target or not candidate:
        return 0

    matched = 0
    for wanted in dict.fromkeys(target):
        if any(wanted == have or wanted in have or have in wanted for have in candidate):
            matched += 1
    return clamp_score(matched / len(dict.fromkeys(target)) * 100)


def tokenize(text: str) -> set[str]:
    tokens = {token.strip(".") for token in _TOKEN_PATTERN.findall(text.lower())}
    return {token for token in tokens if len(token) > 2 and token not in _STOPWORDS}


def token_overlap_score(text: str, target_text: str) -> int:
    target = tokenize(target_text)
    source = tokenize(text)
    if not target or not source:
        return 0
    return clamp_score(len(source & target) / len(target) * 100)


def composite_score(skills: int, summary: int, experience: int) -> int:
    return clamp_score(
        clamp_score(skills) * SKILLS_WEIGHT
        + clamp_score(summary) * SUMMARY_WEIGHT
        + clamp_score(experience) * EXPERIENCE_WEIGHT
    )


@dataclass(slots=True)
class ScoreBreakdown:
    skills: int
    summary: int
    experience: int

    @property
    def total(self) -> int:
        return composite_score(self.skills, self.summary, self.experience)


class MatchScorer:
    """Composite profile-to-job score; each sub-score falls back to a local heuristic."""

    def __init__(self, semantic: SemanticScorer | None = None, *, timeout_sec: float = 30.0):
        self.semantic = semantic
        self.timeout_sec = timeout_sec

    async def score(
        self,
        *,
        skills: list[str],
        summary: str,
        experience_text: str,
        job: JobInfo,
    ) -> ScoreBreakdown:
        target_text = job.description or " ".join([job.title, *job.skills])
        skills_score = await self._skills(skills, job.skills)
        summary_score = await self._similarity(summary, target_text)
        experience_score = await self._similarity(experience_text, target_text)
        return ScoreBreakdown(skills=skills_score, summary=summary_score, experience=experience_score)

    async def score_cv(self, cv_data: CVData, job: JobInfo) -> int:
        breakdown = await self.score(
            skills=cv_data.user.skills,
            summary=cv_data.user.summary,
            experience_text=experience_text([exp.description for exp in cv_data.work_experiences]),
            job=job,
        )
        return breakdown.total

    async def _skills(self, skills: list[str], target: list[str]) -> int:
        if self.semantic is not None and skills and target:
            try:
                value = await with_timeout(
                    self.semantic.score_skills(skills, target), self.timeout_sec, label="score_skills"
                )
                return clamp_score(value)
            except Exception as exc:
                logger.warning("Semantic skills scoring failed; using overlap fallback error=%s", exc)
        return skills_overlap_score(skills, target)

    async def _similarity(self, text: str, target_text: str) -> int:
        if self.semantic is not None and text.strip() and target_text.strip():
            try:
                value = await with_timeout(
                    self.semantic.score_similarity(text, target_text), self.timeout_sec, label="score_similarity"
                )
                return clamp_score(value)
            except Exception as exc:
                logger.warning("Semantic similarity scoring failed; using token fallback error=%s", exc)
        return token_overlap_score(text, target_text)


def experience_text(descriptions: list[str]) -> str:
    return "\n".join(item.strip() for item in descriptions if item and item.strip())
