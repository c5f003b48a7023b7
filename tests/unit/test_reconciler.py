import asyncio

from careerflow.core.reconciler import (
    FALLBACK_SKILL,
    FALLBACK_SUMMARY,
    PatchReconciler,
    fallback_highlights,
    merge_experiences,
    minimal_cv,
    parse_generation_patch,
    reconcile_experiences,
    to_tailored_cv,
)
from careerflow.types import CVData, ExperiencePatch, JobInfo, UserProfile, WorkExperience


def _reconcile(original: CVData, patch, generator=None):
    return asyncio.run(PatchReconciler(generator=generator).reconcile(original, patch))


def test_empty_patch_falls_back_to_original_fields(cv_data) -> None:
    result = _reconcile(cv_data, {})
    patch = result.validated_patch

    assert patch.summary == cv_data.user.summary
    assert patch.skills == ["Python", "PostgreSQL", "Docker"]
    assert [item.index for item in patch.highlights] == [0, 1]
    assert [entry.description for entry in patch.experiences] == [
        "Built Python APIs on AWS.",
        "Ran nightly ETL jobs.",
        "Intern at Initech",
    ]
    assert result.backfilled_indices == [0, 1, 2]


def test_never_empty_when_original_is_blank_too() -> None:
    result = _reconcile(CVData(), {})
    assert result.validated_patch.summary == FALLBACK_SUMMARY
    assert result.validated_patch.skills == [FALLBACK_SKILL]


def test_skills_absent_from_candidate_data_are_dropped() -> None:
    original = CVData(user=UserProfile(summary="Writes Python services.", skills=["Python"]))
    result = _reconcile(original, {"skills": ["Python", "Kubernetes"]})
    assert result.validated_patch.skills == ["Python"]


def test_skills_mentioned_in_free_text_or_projects_are_kept(cv_data) -> None:
    result = _reconcile(cv_data, {"skills": ["AWS", "react", "ETL", "Rust", "python", "Python"]})
    assert result.validated_patch.skills == ["AWS", "react", "ETL", "python"]


def test_fully_filtered_skills_fall_back_to_original(cv_data) -> None:
    result = _reconcile(cv_data, {"skills": ["Kubernetes", "Terraform"]})
    assert result.validated_patch.skills == cv_data.user.skills


def test_experience_coverage_for_any_number_of_ai_entries(cv_data) -> None:
    entries = [
        {"index": 0, "description": "Shipped Python APIs."},
        {"index": 1, "description": "Scheduled ETL."},
        {"index": 2, "description": "Helped analysts."},
    ]
    for count in range(len(entries) + 1):
        result = _reconcile(cv_data, {"experiences": entries[:count]})
        experiences = result.validated_patch.experiences
        assert [entry.index for entry in experiences] == [0, 1, 2]
        assert all(entry.description.strip() for entry in experiences)
        assert result.backfilled_indices == list(range(count, 3))


def test_out_of_range_bool_and_duplicate_indices_are_ignored() -> None:
    originals = [WorkExperience(position="Dev", company="A", description="orig")]
    merged, missing = merge_experiences(
        originals,
        [
            ExperiencePatch(index=0, description="first"),
            ExperiencePatch(index=0, description="second"),
            ExperiencePatch(index=4, description="out of range"),
        ],
    )
    assert [entry.description for entry in merged] == ["first"]
    assert missing == []

    patch = parse_generation_patch({"experiences": [{"index": True, "description": "bool"}, {"index": "0"}]})
    assert patch.experiences == []


def test_retry_is_adopted_when_it_covers_every_missing_index(cv_data, fakes) -> None:
    fakes.generator.rephrase = {
        "experiences": [
            {"index": 1, "description": "Ran nightly ETL jobs for analytics."},
            {"index": 2, "description": "Interned at Initech."},
        ]
    }
    result = _reconcile(cv_data, {"experiences": [{"index": 0, "description": "New 0"}]}, fakes.generator)

    assert result.retry_adopted is True
    assert [entry.description for entry in result.validated_patch.experiences] == [
        "New 0",
        "Ran nightly ETL jobs for analytics.",
        "Interned at Initech.",
    ]
    assert [op.operation for op in result.operations] == ["CV Tailoring: experience_retry"]
    assert fakes.generator.calls == ["rephrase"]


def test_partial_retry_keeps_backfilled_descriptions(cv_data, fakes) -> None:
    fakes.generator.rephrase = {"experiences": [{"index": 1, "description": "Only one"}]}
    result = _reconcile(cv_data, {"experiences": [{"index": 0, "description": "New 0"}]}, fakes.generator)

    assert result.retry_adopted is False
    assert [entry.description for entry in result.validated_patch.experiences] == [
        "New 0",
        "Ran nightly ETL jobs.",
        "Intern at Initech",
    ]


def test_failed_retry_is_not_fatal(cv_data, fakes) -> None:
    fakes.generator.fail.add("rephrase")
    result = _reconcile(cv_data, {}, fakes.generator)

    assert result.retry_adopted is False
    assert result.operations == []
    assert len(result.validated_patch.experiences) == 3


def test_slow_retry_times_out_and_keeps_backfilled_descriptions(cv_data, caplog) -> None:
    class SlowGenerator:
        async def rephrase_experiences(self, *, experiences, job):
            await asyncio.sleep(1)

    outcome = asyncio.run(
        reconcile_experiences(
            cv_data.work_experiences,
            [ExperiencePatch(index=0, description="New 0")],
            generator=SlowGenerator(),
            timeout_sec=0.01,
        )
    )

    assert outcome.retry_adopted is False
    assert outcome.backfilled == [1, 2]
    assert outcome.operations == []
    assert "rephrase_experiences timed out after 0.01s" in caplog.text


def test_no_retry_when_nothing_is_missing(cv_data, fakes) -> None:
    entries = [{"index": idx, "description": f"d{idx}"} for idx in range(3)]
    outcome = asyncio.run(
        reconcile_experiences(
            cv_data.work_experiences,
            parse_generation_patch({"experiences": entries}).experiences,
            generator=fakes.generator,
        )
    )
    assert outcome.backfilled == []
    assert fakes.generator.calls == []


def test_malformed_json_is_treated_as_empty_patch(cv_data) -> None:
    result = _reconcile(cv_data, "{not valid json")
    assert result.validated_patch.summary == cv_data.user.summary
    assert result.validated_patch.skills == cv_data.user.skills


def test_fenced_json_and_camel_case_focus_summary_are_parsed() -> None:
    raw = '```json\n{"summary": " Tailored ", "focusSummary": "APIs", "highlights": ["Led migration", ""]}\n```'
    patch = parse_generation_patch(raw)
    assert patch.summary == "Tailored"
    assert patch.focus_summary == "APIs"
    assert [item.text for item in patch.highlights] == ["Led migration"]


def test_fallback_highlights_truncate_long_descriptions() -> None:
    originals = [WorkExperience(description="x" * 200)] + [
        WorkExperience(description=f"role {n}") for n in range(6)
    ]
    highlights = fallback_highlights(originals)

    assert len(highlights) == 5
    assert highlights[0].text == "x" * 150 + "..."
    assert [item.index for item in highlights] == [0, 1, 2, 3, 4]


def test_match_scores_are_recomputed_before_and_after(cv_data) -> None:
    job = JobInfo(
        title="Data Engineer",
        description="Python ETL pipelines on AWS with PostgreSQL.",
        skills=["Python", "PostgreSQL", "Airflow"],
    )
    result = asyncio.run(
        PatchReconciler().reconcile(
            cv_data,
            {"summary": "Python ETL engineer for PostgreSQL pipelines on AWS.", "skills": ["Python", "PostgreSQL"]},
            job=job,
        )
    )
    assert 0 <= result.match_before <= 100
    assert 0 <= result.match_after <= 100
    assert result.match_after >= result.match_before


def test_tailored_cv_and_minimal_cv_shapes(cv_data) -> None:
    result = _reconcile(cv_data, {"highlights": [{"text": "Led migration", "index": 0}]})
    cv = to_tailored_cv(result)
    assert cv.highlights == ["Led migration"]
    assert cv.changes

    fallback = minimal_cv(cv_data, 42)
    assert fallback.match_before == fallback.match_after == 42
    assert len(fallback.experiences) == 3
    assert fallback.skills == cv_data.user.skills
