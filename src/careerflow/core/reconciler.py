"""Merge AI-produced CV patches onto the candidate's source record.

Every field follows the same priority: the AI value when it is usable, then the
original value, then a non-fabricated default. The merged CV never has an empty
summary or skill list, never contains a skill absent from the candidate's own
data, and always carries one description per original work experience.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from careerflow.core.contracts import ContentGenerator
from careerflow.core.scoring import MatchScorer, experience_text, normalize_skill
from careerflow.core.timeouts import with_timeout
from careerflow.llm.providers import parse_json
from careerflow.types import (
    CVData,
    ExperiencePatch,
    GenerationPatch,
    Highlight,
    JobInfo,
    OperationUsage,
    ReconcileResult,
    TailoredCV,
    WorkExperience,
)

logger = logging.getLogger(__name__)

FALLBACK_SUMMARY = "Professional with relevant experience and skills."
FALLBACK_SKILL = "Professional Skills"
HIGHLIGHT_SOURCE_LIMIT = 5
HIGHLIGHT_MAX_CHARS = 150


def parse_generation_patch(raw: Any) -> GenerationPatch:
    """Coerce an untrusted AI response into a ``GenerationPatch``.

    Accepts a JSON string (optionally fenced), a dict, or an existing patch.
    Anything unparseable becomes an empty patch; malformed list entries are dropped.
    """
    if isinstance(raw, GenerationPatch):
        return raw
    if isinstance(raw, str):
        data = parse_json(raw)
    elif isinstance(raw, dict):
        data = raw
    else:
        if raw is not None:
            logger.warning("Unsupported patch payload type=%s; treating as empty", type(raw).__name__)
        return GenerationPatch()

    summary = data.get("summary")
    focus = data.get("focus_summary", data.get("focusSummary"))
    return GenerationPatch(
        summary=summary.strip() if isinstance(summary, str) else "",
        focus_summary=focus.strip() if isinstance(focus, str) and focus.strip() else None,
        skills=_string_list(data.get("skills")),
        highlights=_highlights(data.get("highlights")),
        experiences=_experience_entries(data.get("experiences")),
    )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _highlights(value: Any) -> list[Highlight]:
    if not isinstance(value, list):
        return []

    items: list[Highlight] = []
    for raw in value:
        if isinstance(raw, str) and raw.strip():
            items.append(Highlight(text=raw.strip()))
            continue
        if not isinstance(raw, dict):
            continue
        text = raw.get("text")
        if not isinstance(text, str) or not text.strip():
            continue
        index = raw.get("index")
        source = raw.get("source")
        items.append(
            Highlight(
                text=text.strip(),
                source=source if isinstance(source, str) and source else "experience",
                index=index if isinstance(index, int) and not isinstance(index, bool) else None,
            )
        )
    return items


def _experience_entries(value: Any) -> list[ExperiencePatch]:
    if not isinstance(value, list):
        return []

    entries: list[ExperiencePatch] = []
    for raw in value:
        if not isinstance(raw, dict):
            continue
        index = raw.get("index")
        description = raw.get("description")
        if not isinstance(index, int) or isinstance(index, bool):
            continue
        if not isinstance(description, str) or not description.strip():
            continue
        entries.append(ExperiencePatch(index=index, description=description.strip()))
    return entries


def fallback_experience_description(experience: WorkExperience) -> str:
    if experience.description.strip():
        return experience.description.strip()
    return f"{experience.position.strip() or 'Position'} at {experience.company.strip() or 'Company'}"


def merge_experiences(
    originals: list[WorkExperience], provided: list[ExperiencePatch]
) -> tuple[list[ExperiencePatch], list[int]]:
    """Return one entry per original index plus the indices that had to be back-filled."""
    by_index: dict[int, str] = {}
    for entry in provided:
        if 0 <= entry.index < len(originals) and entry.index not in by_index:
            by_index[entry.index] = entry.description

    merged: list[ExperiencePatch] = []
    missing: list[int] = []
    for idx, original in enumerate(originals):
        description = by_index.get(idx)
        if description is None:
            missing.append(idx)
            description = fallback_experience_description(original)
        merged.append(ExperiencePatch(index=idx, description=description))
    return merged, missing


@dataclass(slots=True)
class ExperienceReconciliation:
    experiences: list[ExperiencePatch]
    backfilled: list[int] = field(default_factory=list)
    retry_adopted: bool = False
    operations: list[OperationUsage] = field(default_factory=list)


async def reconcile_experiences(
    originals: list[WorkExperience],
    provided: list[ExperiencePatch],
    *,
    generator: ContentGenerator | None = None,
    job: JobInfo | None = None,
    timeout_sec: float = 90.0,
) -> ExperienceReconciliation:
    """Merge experience descriptions, retrying once for indices the AI skipped.

    The retry only rephrases the missing entries and is adopted only when it
    covers every missing index; otherwise the back-filled originals stand.
    """
    merged, missing = merge_experiences(originals, provided)
    result = ExperienceReconciliation(experiences=merged, backfilled=missing)
    if not missing or generator is None:
        return result

    try:
        output = await with_timeout(
            generator.rephrase_experiences(
                experiences={idx: originals[idx] for idx in missing},
                job=job,
            ),
            timeout_sec,
            label="rephrase_experiences",
        )
    except Exception as exc:
        logger.warning("Experience rephrase retry failed missing=%s error=%s", missing, exc)
        return result

    result.operations.append(OperationUsage(operation="CV Tailoring: experience_retry", usage=output.usage))
    content = output.content
    if isinstance(content, list):
        content = {"experiences": content}
    retried = {entry.index: entry.description for entry in parse_generation_patch(content).experiences}

    if not all(idx in retried for idx in missing):
        logger.warning(
            "Experience retry incomplete missing=%s returned=%s; keeping back-filled descriptions",
            missing,
            sorted(retried),
        )
        return result

    result.experiences = [
        ExperiencePatch(index=entry.index, description=retried.get(entry.index, entry.description))
        if entry.index in missing
        else entry
        for entry in merged
    ]
    result.retry_adopted = True
    return result


def build_skill_corpus(original: CVData) -> tuple[set[str], str]:
    allowed = {normalize_skill(skill) for skill in original.user.skills if skill.strip()}
    for project in original.projects:
        allowed.update(normalize_skill(tech) for tech in project.technologies if tech.strip())

    texts = [original.user.summary]
    texts.extend(exp.description for exp in original.work_experiences)
    texts.extend(project.description for project in original.projects)
    corpus = " ".join(" ".join(texts).lower().split())
    return allowed, corpus


def filter_skills(candidates: list[str], allowed: set[str], corpus: str) -> list[str]:
    kept: list[str] = []
    seen: set[str] = set()
    for skill in candidates:
        normalized = normalize_skill(skill)
        if not normalized or normalized in seen:
            continue
        if normalized in allowed or _mentions(corpus, normalized):
            kept.append(skill.strip())
            seen.add(normalized)
        else:
            logger.debug("Dropped unsupported skill=%s", skill)
    return kept


def _mentions(corpus: str, term: str) -> bool:
    pattern = r"(?<![a-z0-9])" + re.escape(term) + r"(?![a-z0-9])"
    return re.search(pattern, corpus) is not None


def fallback_highlights(originals: list[WorkExperience]) -> list[Highlight]:
    highlights: list[Highlight] = []
    for idx, experience in enumerate(originals[:HIGHLIGHT_SOURCE_LIMIT]):
        description = experience.description.strip()
        if not description:
            continue
        text = description[:HIGHLIGHT_MAX_CHARS]
        if len(description) > HIGHLIGHT_MAX_CHARS:
            text += "..."
        highlights.append(Highlight(text=text, source="experience", index=idx))
    return highlights


class PatchReconciler:
    def __init__(
        self,
        *,
        scorer: MatchScorer | None = None,
        generator: ContentGenerator | None = None,
        retry_timeout_sec: float = 90.0,
    ):
        self.scorer = scorer or MatchScorer()
        self.generator = generator
        self.retry_timeout_sec = retry_timeout_sec

    async def reconcile(
        self,
        original: CVData,
        ai_patch: Any,
        *,
        job: JobInfo | None = None,
    ) -> ReconcileResult:
        patch = parse_generation_patch(ai_patch)
        target = job or JobInfo()

        summary = patch.summary or original.user.summary.strip() or FALLBACK_SUMMARY

        allowed, corpus = build_skill_corpus(original)
        skills = filter_skills(patch.skills, allowed, corpus)
        if not skills:
            skills = [skill.strip() for skill in original.user.skills if skill.strip()]
        if not skills:
            skills = [FALLBACK_SKILL]

        highlights = patch.highlights or fallback_highlights(original.work_experiences)

        experiences = await reconcile_experiences(
            original.work_experiences,
            patch.experiences,
            generator=self.generator,
            job=job,
            timeout_sec=self.retry_timeout_sec,
        )

        validated = GenerationPatch(
            summary=summary,
            focus_summary=patch.focus_summary,
            skills=skills,
            highlights=highlights,
            experiences=experiences.experiences,
        )

        match_before = await self.scorer.score_cv(original, target)
        after = await self.scorer.score(
            skills=validated.skills,
            summary=validated.summary,
            experience_text=experience_text([entry.description for entry in validated.experiences]),
            job=target,
        )

        if experiences.backfilled:
            logger.info(
                "Reconciled CV backfilled=%s retry_adopted=%s",
                experiences.backfilled,
                experiences.retry_adopted,
            )

        return ReconcileResult(
            validated_patch=validated,
            match_before=match_before,
            match_after=after.total,
            backfilled_indices=experiences.backfilled,
            retry_adopted=experiences.retry_adopted,
            operations=experiences.operations,
        )


def to_tailored_cv(result: ReconcileResult) -> TailoredCV:
    patch = result.validated_patch
    changes: list[str] = []
    if result.backfilled_indices and not result.retry_adopted:
        changes.append(f"kept original descriptions for experiences {result.backfilled_indices}")
    return TailoredCV(
        summary=patch.summary,
        focus_summary=patch.focus_summary,
        skills=patch.skills,
        highlights=[item.text for item in patch.highlights if item.text.strip()],
        experiences=patch.experiences,
        match_before=result.match_before,
        match_after=result.match_after,
        changes=changes,
    )


def minimal_cv(original: CVData, match: int) -> TailoredCV:
    """Untailored CV built only from the source record."""
    experiences, _ = merge_experiences(original.work_experiences, [])
    skills = [skill.strip() for skill in original.user.skills if skill.strip()] or [FALLBACK_SKILL]
    return TailoredCV(
        summary=original.user.summary.strip() or FALLBACK_SUMMARY,
        focus_summary=None,
        skills=skills,
        highlights=[entry.description for entry in experiences[:HIGHLIGHT_SOURCE_LIMIT]],
        experiences=experiences,
        match_before=match,
        match_after=match,
    )
