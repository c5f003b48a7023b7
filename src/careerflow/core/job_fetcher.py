from __future__ import annotations

import logging
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from careerflow.types import ExtractedJobData

logger = logging.getLogger(__name__)


USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

ABOUT_THE_JOB_MIN_CHARS = 50


def is_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def fetch_job_text(url: str, timeout_sec: int = 30) -> str:
    response = requests.get(url, timeout=timeout_sec, headers={"User-Agent": USER_AGENT})
    response.raise_for_status()

    soup = BeautifulSoup(response.text, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.extract()

    text = soup.get_text("\n")
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines)


def build_job_description(extracted: ExtractedJobData) -> str:
    """Rebuild a plain-text job description from captured page fields.

    Fields are appended in a fixed order and only when non-empty; the
    "about the job" section wins over the generic description, which wins
    over the raw page text.
    """
    parts: list[str] = []
    for label, value in (
        ("Job Title", extracted.title),
        ("Company", extracted.company),
        ("Location", extracted.location),
        ("Employment Type", extracted.employment_type),
        ("Experience Level", extracted.experience_level),
    ):
        if value.strip():
            parts.append(f"{label}: {value.strip()}")

    if len(extracted.about_the_job.strip()) > ABOUT_THE_JOB_MIN_CHARS:
        parts.append(f"About the Job:\n{extracted.about_the_job.strip()}")
    elif extracted.description.strip():
        parts.append(f"Job Description:\n{extracted.description.strip()}")
    elif extracted.text.strip():
        parts.append(f"Job Description:\n{extracted.text.strip()}")
    else:
        logger.debug("No job body available in extracted data")

    return "\n\n".join(parts).strip()


def primary_job_input(target_url: str, extracted: ExtractedJobData | None) -> str:
    if extracted is not None and extracted.text.strip():
        return extracted.text.strip()
    return target_url
