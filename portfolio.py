"""GitHub account in, portfolio document out. Shared by the API and the CLI."""

import logging, os
from dataclasses import dataclass
from functools import partial

import httpx
from pydantic import BaseModel

from errors import NotFound
from github import CFG, RepositoryRecord, build_evidence, fetch_user, list_repositories
from llm import BATCH_SIZE, ProjectAnalysis, call_llm, run_analysis

log = logging.getLogger("portfolio")

NO_DESCRIPTION = "No description available."
DEFAULT_LANGUAGE = "Turkish"

# ── settings ────────────────────────────────────────────────────────────────

ENV_DEFAULTS = {
    "LLM_API_URL": "https://ollama.com",
    "LLM_MODEL": "llama3",
}

def env_or(value: str | None, key: str) -> str:
    """Per-call value if non-empty, else the process env, else a built-in default."""
    if value:
        return value
    return os.environ.get(key) or ENV_DEFAULTS.get(key, "")

@dataclass(frozen=True)
class Settings:
    api_url: str
    api_key: str
    model_name: str
    github_token: str = ""
    language: str = DEFAULT_LANGUAGE

    @classmethod
    def resolve(cls, api_url="", api_key="", model_name="", github_token="", language="") -> "Settings":
        return cls(
            api_url=env_or(api_url, "LLM_API_URL"),
            api_key=env_or(api_key, "LLM_API_KEY"),
            model_name=env_or(model_name, "LLM_MODEL"),
            github_token=env_or(github_token, "GITHUB_TOKEN"),
            language=language or DEFAULT_LANGUAGE,
        )


# ── output ──────────────────────────────────────────────────────────────────

class ProjectCard(BaseModel):
    name: str
    problem_solved: str
    detailed_description: str
    use_cases: list[str]
    tech_stack: list[str]
    language: str | None
    stars: int
    forks: int
    html_url: str
    description: str | None

class Portfolio(BaseModel):
    username: str
    avatar_url: str
    profile_url: str
    hero_title: str
    bio: str
    projects: list[ProjectCard]


# ── merge ───────────────────────────────────────────────────────────────────

def _lookup(projects: list[ProjectAnalysis]) -> dict[str, ProjectAnalysis]:
    found: dict[str, ProjectAnalysis] = {}
    for p in projects:
        found.setdefault(p.name.lower(), p)    # first match wins
    return found

def merge_cards(repos: list[RepositoryRecord], projects: list[ProjectAnalysis]) -> list[ProjectCard]:
    """Exactly one card per repo. Metadata always comes from GitHub, never the model."""
    found = _lookup(projects)
    cards = []
    for repo in repos:
        p = found.get(repo.name.lower()) or ProjectAnalysis(name=repo.name)
        # fields the model left empty fall back to catalog metadata
        text = dict(
            problem_solved=p.problem_solved or repo.description or NO_DESCRIPTION,
            detailed_description=p.detailed_description,
            use_cases=list(p.use_cases),
            tech_stack=list(p.tech_stack) or ([repo.language] if repo.language else []),
        )
        cards.append(ProjectCard(
            name=repo.name, language=repo.language, stars=repo.stars, forks=repo.forks,
            html_url=repo.html_url, description=repo.description, **text,
        ))
    return cards


# ── pipeline ────────────────────────────────────────────────────────────────

async def build_portfolio(username: str, s: Settings, *, batch_size: int = BATCH_SIZE,
                          transport: httpx.AsyncBaseTransport | None = None) -> Portfolio:
    log.info(f"Analyzing {username} (model={s.model_name}, language={s.language}, "
             f"github token {'set' if s.github_token else 'not set'})")

    async with httpx.AsyncClient(timeout=CFG.timeout, transport=transport) as http:
        user = await fetch_user(http, username, s.github_token)
        repos = await list_repositories(http, username, s.github_token)
        if not repos:
            raise NotFound("No public repositories found for this user.")

        evidence = await build_evidence(http, username, repos, s.github_token)

        ask = partial(_ask, http, s)
        analysis = await run_analysis(ask, username, [r.name for r in repos], evidence,
                                      s.language, batch_size)

    return Portfolio(
        username=username,
        avatar_url=user["avatar_url"],
        profile_url=user["html_url"],
        hero_title=analysis.hero_title,
        bio=analysis.bio,
        projects=merge_cards(repos, analysis.projects),
    )

async def _ask(http, s: Settings, prompt, shape):
    return await call_llm(http, s.api_url, s.api_key, s.model_name, prompt, s.language, shape)
