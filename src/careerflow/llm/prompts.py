from __future__ import annotations

JSON_SYSTEM_PROMPT = "You are a careful assistant. Return ONLY valid JSON, no markdown and no commentary."

JOB_PARSE_PROMPT = """
Parse this job posting and extract structured details.
Return strict JSON with keys:
- title: string
- company: string
- location: string
- experience_level: string (e.g. "Entry level", "Mid-Senior level")
- employment_type: string (e.g. "Full-time", "Contract")
- description: string (the full job description)
- job_functions: string[]
- industries: string[]
- skills: string[]

Job posting:
{job_text}
""".strip()

SKILL_EXTRACTION_PROMPT = """
Extract every technical skill, soft skill, tool and technology mentioned in this job description.
Return strict JSON: {{"skills": ["skill1", "skill2"]}}

Job description:
{description}
""".strip()

SKILL_MATCH_PROMPT = """
You are a skill matching expert. Assess how well the candidate's skills match the job,
considering direct matches, transferable skills and gaps.
Return strict JSON with keys:
- match_percentage: integer 0..100
- matching_skills: string[]
- suggested_skills: string[] (missing skills worth acquiring)
- reasoning: string

Candidate skills: {user_skills}
Job skills: {job_skills}

Job description:
{description}
""".strip()

COVER_LETTER_PROMPT = """
Write a cover letter for the candidate below, addressed to the hiring team.
Rules:
- 180 to 320 words, plain text, no markdown, no placeholders in brackets.
- Use only facts present in the candidate profile; do not invent employers, metrics or degrees.
- Close with the candidate's name.

Candidate profile JSON:
{profile_json}

Job JSON:
{job_json}
""".strip()

INTERVIEW_QA_PROMPT = """
Prepare interview practice material for the candidate below.
Batch {batch_index} focus: {focus}.
Return strict JSON: {{"items": [{{"q": "question", "a": "suggested answer"}}]}} with exactly {count} items.
Answers must draw only on the candidate's real background.

Candidate profile JSON:
{profile_json}

Job JSON:
{job_json}
""".strip()

TAILORED_CV_PROMPT = """
Tailor the candidate's CV to the job. Rephrase and reorder, never invent facts.
Return strict JSON with keys:
- summary: string (3-4 sentences)
- focus_summary: string (one line positioning statement)
- skills: string[] (only skills present in the candidate data, most relevant first)
- highlights: array of {{"text": string, "source": "experience" | "project", "index": integer}}
- experiences: array of {{"index": integer, "description": string}} with one entry for EVERY work
  experience index below (0-based), rewritten to emphasise what matters for this job

Candidate CV JSON:
{cv_json}

Job JSON:
{job_json}
""".strip()

EXPERIENCE_REPHRASE_PROMPT = """
Rephrase only the work experience descriptions listed below so they speak to the target job.
Keep every fact; do not add employers, titles, dates, tools or metrics that are not already present.
Return strict JSON: {{"experiences": [{{"index": integer, "description": string}}]}}
with exactly one entry for each of these indices: {indices}.

Experiences JSON (keyed by index):
{experiences_json}

Job JSON:
{job_json}
""".strip()

PORTFOLIO_SYSTEM_PROMPT = """
You are an expert web developer and designer building a single-page portfolio tailored to one job.

OUTPUT CONTRACT:
- Output ONLY raw HTML (no markdown, no backticks, no explanations).
- The output MUST start with <!DOCTYPE html> and MUST end with </html>.
- Single file: embed all CSS in one <style> and all JS in one <script>; no external scripts, stylesheets, fonts or images.
- Hyperlinks are allowed only as normal <a href="..."> links.

TRUTHFULNESS:
- Use ONLY the provided candidate data. Do not invent employers, projects, degrees, metrics or awards.
- If a detail is missing, omit it.
""".strip()

PORTFOLIO_PROMPT = """
Build the portfolio page for this candidate, positioned for the job below.

Candidate CV JSON:
{cv_json}

Job JSON:
{job_json}

Tailored summary (optional):
{tailored_summary}
""".strip()

SKILLS_SCORE_PROMPT = """
Rate from 0 to 100 how well the candidate skills cover the required skills, counting synonyms
and closely related technologies as matches.
Return strict JSON: {{"score": integer}}

Candidate skills: {candidate_skills}
Required skills: {target_skills}
""".strip()

SIMILARITY_SCORE_PROMPT = """
Rate from 0 to 100 how relevant the candidate text is to the job text.
Return strict JSON: {{"score": integer}}

Candidate text:
{text}

Job text:
{target_text}
""".strip()
