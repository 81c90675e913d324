"""Talk to an OpenAI-compatible or Ollama-native chat endpoint in batches."""

import logging, re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, Omit
from pydantic import BaseModel, ValidationError

from errors import FormatError, NetworkError, ParseError, UpstreamStatusError

log = logging.getLogger("llm")

OPENAI, OLLAMA = "openai", "ollama"
BATCH_SIZE = 8
TEMPERATURE = 0.7
SEPARATOR = "\n\n---\n\n"

# ── output shapes ───────────────────────────────────────────────────────────

class ProjectAnalysis(BaseModel):
    name: str
    problem_solved: str = ""
    detailed_description: str = ""
    use_cases: list[str] = []
    tech_stack: list[str] = []

class BatchAnalysis(BaseModel):
    projects: list[ProjectAnalysis]

class FullAnalysis(BatchAnalysis):
    hero_title: str
    bio: str


# ── api mode ────────────────────────────────────────────────────────────────

_VERSIONED = re.compile(r"/v\d$")

def resolve_api_mode(api_url: str) -> tuple[str, str]:
    """Pick the wire dialect for a user-supplied URL and the exact URL to POST to."""
    base = api_url.rstrip("/")

    # full endpoint already given
    if base.endswith("/chat/completions"):
        return OPENAI, base
    if base.endswith("/api/chat"):
        return OLLAMA, base
    if base.endswith("/api/generate"):
        return OLLAMA, base[:-len("/generate")] + "/chat"

    if _VERSIONED.search(base):
        return OPENAI, f"{base}/chat/completions"
    if base.endswith("/api"):
        return OLLAMA, f"{base}/chat"
    if ":11434" in base or "ollama" in base:
        return OLLAMA, f"{base}/api/chat"
    return OPENAI, f"{base}/v1/chat/completions"


# ── prompts ─────────────────────────────────────────────────────────────────

def system_prompt(language: str, full: bool = True) -> str:
    who = "a senior software analyst and branding expert" if full else "a senior software analyst"
    return (f"You are {who}. Respond ONLY with valid JSON. No markdown fences, no extra text. "
            f"All text content must be in {language}.")

FULL_TEMPLATE = """You are a senior software analyst and branding expert. Analyze the following GitHub profile data deeply.

CRITICAL RULES:
- Respond ENTIRELY in {lang}.
- You MUST generate an entry for EVERY repository listed below. Do NOT skip any.
- Required repos (you MUST include ALL of these): [{names}]
- If a project has SOURCE CODE provided, READ and UNDERSTAND the code to determine what the project does.
- If a project has NO README, use the code, dependencies, description, language, and metadata to infer the project's purpose. NEVER leave a project without analysis.
- If a project only has metadata (name, language, description), use that to infer what the project does and write a meaningful description.
- Be specific and technical. Do NOT use generic phrases like "this is a project".
- Every project MUST have a detailed_description (3-5 sentences) and at least 2 use_cases.
- Use the exact repository name, with the same casing, in every "name" field.
- Respond ONLY with valid JSON. No markdown fences, no extra text.

GitHub User: {user}

Repository Data:
{repos}

Respond in this exact JSON format (include ALL {count} repositories):
{{
  "hero_title": "A short, impactful professional title for this developer (in {lang})",
  "bio": "A 3-4 sentence professional biography highlighting their expertise, tech focus, and impact (in {lang})",
  "projects": [
    {{
      "name": "exact-repo-name",
      "problem_solved": "One clear sentence about the core problem this project solves (in {lang})",
      "detailed_description": "3-5 sentence technical description of what the project does, its architecture, and key features (in {lang})",
      "use_cases": ["Specific use case 1 (in {lang})", "Specific use case 2 (in {lang})", "Specific use case 3 (in {lang})"],
      "tech_stack": ["technology1", "technology2", "technology3"]
    }}
  ]
}}"""

BATCH_TEMPLATE = """You are a senior software analyst. Analyze the following repositories deeply.

CRITICAL RULES:
- Respond ENTIRELY in {lang}.
- You MUST generate an entry for EVERY repository: [{names}]
- If a project has SOURCE CODE, READ and UNDERSTAND the code to determine what it does.
- If a project has NO README, use code, dependencies, description, language, and metadata to infer purpose.
- Be specific and technical. Do NOT use generic phrases.
- Every project MUST have detailed_description (3-5 sentences) and at least 2 use_cases.
- Use the exact repository name, with the same casing, in every "name" field.
- Respond ONLY with valid JSON. No markdown fences, no extra text.

Repository Data:
{repos}

Respond in this exact JSON format (include ALL {count} repositories):
{{
  "projects": [
    {{
      "name": "exact-repo-name",
      "problem_solved": "One clear sentence (in {lang})",
      "detailed_description": "3-5 sentence technical description (in {lang})",
      "use_cases": ["Use case 1 (in {lang})", "Use case 2 (in {lang})"],
      "tech_stack": ["tech1", "tech2"]
    }}
  ]
}}"""

def full_prompt(user: str, evidence: list[str], language: str, names: list[str]) -> str:
    return FULL_TEMPLATE.format(lang=language, user=user, repos=SEPARATOR.join(evidence),
                                names=", ".join(names), count=len(names))

def batch_prompt(evidence: list[str], language: str, names: list[str]) -> str:
    return BATCH_TEMPLATE.format(lang=language, repos=SEPARATOR.join(evidence),
                                 names=", ".join(names), count=len(names))


# ── single call ─────────────────────────────────────────────────────────────

def _clean(txt: str) -> str:
    t = txt.strip()
    for fence in ("```json", "```"):
        if t.startswith(fence):
            t = t[len(fence):]
    if t.endswith("```"):
        t = t[:-3]
    return t.strip()

def parse_reply(content: str, shape: type[BaseModel]) -> BaseModel:
    cleaned = _clean(content)
    try:
        return shape.model_validate_json(cleaned)
    except ValidationError as e:
        raise ParseError(f"Failed to parse LLM JSON ({e.error_count()} errors)", cleaned) from e

async def _ask_ollama(http: httpx.AsyncClient, endpoint: str, api_key: str, body: dict) -> str:
    hdrs = {"Content-Type": "application/json"}
    if api_key: hdrs["Authorization"] = f"Bearer {api_key}"
    try:
        r = await http.post(endpoint, json=body, headers=hdrs)
    except httpx.HTTPError as e:
        raise NetworkError(f"error sending request for url ({endpoint}): {e}") from e
    if not r.is_success:
        raise UpstreamStatusError(r.status_code, r.text, "LLM API")
    try:
        content = r.json()["message"]["content"]
    except (ValueError, KeyError, TypeError):
        content = None
    if not isinstance(content, str):
        raise FormatError(f"Unexpected Ollama response format: {r.text[:300]}")
    return content

async def _ask_openai(http: httpx.AsyncClient, endpoint: str, api_key: str, body: dict) -> str:
    # the SDK appends /chat/completions itself; one attempt only
    # keyless servers: the SDK insists on a key, so pass a dummy and omit the header
    extra = {} if api_key else {"Authorization": Omit()}
    client = AsyncOpenAI(api_key=api_key or "none", base_url=endpoint[:-len("/chat/completions")],
                         http_client=http, timeout=http.timeout, max_retries=0,
                         default_headers=extra)
    try:
        resp = await client.chat.completions.create(**body)
    except APIStatusError as e:
        raise UpstreamStatusError(e.status_code, e.response.text, "LLM API") from e
    except APIConnectionError as e:
        raise NetworkError(f"error sending request for url ({endpoint}): {e}") from e
    except (APIError, ValueError) as e:
        raise FormatError(f"Unexpected OpenAI response: {e}") from e
    try:
        content = resp.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        content = None
    if not isinstance(content, str):
        raise FormatError(f"Unexpected OpenAI response format: {str(resp)[:300]}")
    return content

async def call_llm(http: httpx.AsyncClient, api_url: str, api_key: str, model: str,
                   prompt: str, language: str, shape: type[BaseModel]) -> BaseModel:
    """One POST, one parsed reply. Raises PipelineError subclasses on failure."""
    mode, endpoint = resolve_api_mode(api_url)
    body = {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt(language, shape is FullAnalysis)},
                     {"role": "user", "content": prompt}],
        "temperature": TEMPERATURE,
        "stream": False,
    }
    log.info(f"Sending {len(prompt)} chars to {model} ({mode}: {endpoint})")
    ask = _ask_ollama if mode == OLLAMA else _ask_openai
    content = await ask(http, endpoint, api_key, body)
    log.info(f"LLM replied with {len(content)} chars")
    return parse_reply(content, shape)


# ── batching ────────────────────────────────────────────────────────────────

Ask = Callable[[str, type[BatchAnalysis]], Awaitable[BatchAnalysis]]

@dataclass
class BatchOutcome:
    index: int
    names: list[str]
    kind: Literal["ok", "skipped", "fatal"]
    result: BatchAnalysis | None = None
    error: Exception | None = None

def outcome_for(index: int, names: list[str], result: BatchAnalysis | None = None,
                error: Exception | None = None) -> BatchOutcome:
    """Only the first batch carries hero/bio, so only its failure is fatal."""
    if error is None:
        return BatchOutcome(index, names, "ok", result=result)
    return BatchOutcome(index, names, "fatal" if index == 0 else "skipped", error=error)

@dataclass
class Analysis:
    hero_title: str = ""
    bio: str = ""
    projects: list[ProjectAnalysis] = field(default_factory=list)
    outcomes: list[BatchOutcome] = field(default_factory=list)

def chunks(n: int, size: int) -> list[tuple[int, int]]:
    if size < 1:
        raise ValueError(f"batch size must be positive, got {size}")
    return [(i, min(i + size, n)) for i in range(0, n, size)]

async def run_analysis(ask: Ask, user: str, names: list[str], evidence: list[str],
                       language: str, batch_size: int = BATCH_SIZE) -> Analysis:
    """Analyze repos batch by batch. Re-raises the first batch's error, logs and skips the rest."""
    spans = chunks(len(names), batch_size)
    out = Analysis()
    for idx, (lo, hi) in enumerate(spans):
        batch_names = names[lo:hi]
        log.info(f"Batch {idx + 1}/{len(spans)}: repos {lo + 1}-{hi} ({', '.join(batch_names)})")
        if idx == 0:
            prompt, shape = full_prompt(user, evidence[lo:hi], language, batch_names), FullAnalysis
        else:
            prompt, shape = batch_prompt(evidence[lo:hi], language, batch_names), BatchAnalysis
        try:
            outcome = outcome_for(idx, batch_names, result=await ask(prompt, shape))
        except Exception as e:
            outcome = outcome_for(idx, batch_names, error=e)
        out.outcomes.append(outcome)

        if outcome.kind == "fatal":
            log.error(f"Batch 1 failed: {outcome.error}")
            raise outcome.error
        if outcome.kind == "skipped":
            log.warning(f"Batch {idx + 1} failed: {outcome.error}, continuing...")
            continue
        res = outcome.result
        if isinstance(res, FullAnalysis):
            out.hero_title, out.bio = res.hero_title, res.bio
        out.projects.extend(res.projects)
        log.info(f"Batch {idx + 1} OK: {len(res.projects)} projects")
    log.info(f"Total LLM projects: {len(out.projects)}")
    return out
