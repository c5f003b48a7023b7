from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
import uvicorn

from careerflow.api.app import create_app
from careerflow.config import get_settings
from careerflow.core.pipeline import JobPipeline
from careerflow.core.reconciler import PatchReconciler
from careerflow.core.runtime import build_services
from careerflow.core.scheduler import AdmissionError
from careerflow.core.worker import JobWorker
from careerflow.db.init import init_database
from careerflow.db.repositories import Repository
from careerflow.db.session import SessionLocal
from careerflow.logging_config import configure_logging
from careerflow.types import CVData, ExtractedJobData, JobInfo

app = typer.Typer(help="CareerFlow CLI")
user_app = typer.Typer(help="Manage users and their CV data")
jobs_app = typer.Typer(help="Saved job commands")

app.add_typer(user_app, name="user")
app.add_typer(jobs_app, name="jobs")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@app.command("init")
def init_cmd() -> None:
    """Initialize database and data directories."""
    configure_logging()
    result = init_database()
    typer.echo(json.dumps({"ok": True, **result}, indent=2))


@user_app.command("create")
def user_create(
    user_id: str = typer.Option(..., "--id"),
    full_name: str = typer.Option("", "--name"),
    email: str = typer.Option("", "--email"),
    summary: str = typer.Option("", "--summary"),
    skills: str = typer.Option("", "--skills", help="Comma separated"),
    credits: int = typer.Option(0, "--credits"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        user = repo.create_user(
            user_id,
            full_name=full_name,
            email=email,
            summary=summary,
            skills=_split_csv(skills),
            credits_balance=credits,
        )
        typer.echo(
            json.dumps(
                {"id": user.id, "name": user.full_name, "skills": user.skills_json, "credits": user.credits_balance},
                indent=2,
            )
        )


@user_app.command("add-experience")
def user_add_experience(
    user_id: str = typer.Option(..., "--id"),
    position: str = typer.Option(..., "--position"),
    company: str = typer.Option(..., "--company"),
    description: str = typer.Option("", "--description"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        if repo.get_user(user_id) is None:
            raise typer.BadParameter(f"user {user_id} not found")
        experience = repo.add_experience(user_id, position=position, company=company, description=description)
        typer.echo(json.dumps({"id": experience.id, "index": experience.sort_order}, indent=2))


@user_app.command("preferences")
def user_preferences(
    user_id: str = typer.Option(..., "--id"),
    cv: bool = typer.Option(True, "--cv/--no-cv"),
    cover_letter: bool = typer.Option(True, "--cover-letter/--no-cover-letter"),
    interview_qa: bool = typer.Option(True, "--interview-qa/--no-interview-qa"),
    portfolio: bool = typer.Option(True, "--portfolio/--no-portfolio"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        try:
            user = repo.set_message_preferences(
                user_id, cv=cv, cover_letter=cover_letter, interview_qa=interview_qa, portfolio=portfolio
            )
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        typer.echo(
            json.dumps(
                {
                    "id": user.id,
                    "cv": user.pref_cv,
                    "cover_letter": user.pref_cover_letter,
                    "interview_qa": user.pref_interview_qa,
                    "portfolio": user.pref_portfolio,
                },
                indent=2,
            )
        )


@jobs_app.command("list")
def jobs_list(
    user_id: str = typer.Option(..., "--user"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        jobs = repo.list_saved_jobs(user_id, limit=limit)
        typer.echo(
            json.dumps(
                [
                    {
                        "id": job.id,
                        "title": job.title,
                        "company": job.company,
                        "url": job.url,
                        "match_percentage": job.match_percentage,
                        "created_at": job.created_at.isoformat() if job.created_at else None,
                    }
                    for job in jobs
                ],
                indent=2,
            )
        )


@app.command("submit")
def submit_cmd(
    user_id: str = typer.Option(..., "--user"),
    url: str = typer.Option(..., "--url"),
    text_file: Path | None = typer.Option(None, "--text-file", exists=True, readable=True),
) -> None:
    """Run one job through the full pipeline in the foreground."""
    configure_logging()
    ensure_initialized()
    extracted = None
    if text_file is not None:
        extracted = ExtractedJobData(text=text_file.read_text(encoding="utf-8"))

    worker = JobWorker(JobPipeline(build_services()))

    async def run() -> dict:
        result = worker.submit(user_id, url, extracted, start=False)
        record = worker.get_status(user_id, url)
        await worker.drain()
        return {"submit": result.to_dict(), "job": {**record.to_dict(), "result": record.result}}

    try:
        payload = asyncio.run(run())
    except AdmissionError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command("reconcile")
def reconcile_cmd(
    cv_file: Path = typer.Option(..., "--cv-file", exists=True, readable=True),
    patch_file: Path = typer.Option(..., "--patch-file", exists=True, readable=True),
    job_file: Path | None = typer.Option(None, "--job-file", exists=True, readable=True),
) -> None:
    """Merge an AI CV patch onto a CV offline and print the validated result."""
    configure_logging()
    cv_data = CVData.model_validate_json(cv_file.read_text(encoding="utf-8"))
    job = JobInfo.model_validate_json(job_file.read_text(encoding="utf-8")) if job_file else None

    reconciler = PatchReconciler()
    result = asyncio.run(reconciler.reconcile(cv_data, patch_file.read_text(encoding="utf-8"), job=job))
    typer.echo(result.model_dump_json(indent=2))


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)
