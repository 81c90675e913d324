"""Fetch a GitHub account's repos and boil each one down to LLM evidence."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx

from errors import FormatError, NetworkError, NotFound, PipelineError, UpstreamStatusError

log = logging.getLogger("github")

# ── config ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Config:
    api_base: str = "https://api.github.com"
    user_agent: str = "git2page"
    page_size: int = 30
    crowded: int = 15           # above this many repos the tight budgets apply
    readme_cap: int = 1000
    readme_cap_tight: int = 600
    source_cap: int = 1200
    source_cap_tight: int = 800
    manifest_cap: int = 300
    max_sources: int = 2
    listing_preview: int = 20
    timeout: float = 300.0

CFG = Config()

# ── heuristics tables ───────────────────────────────────────────────────────

README_NAMES = ("README.md", "readme.md", "Readme.md")

# probed in order, first hit wins
MANIFEST_NAMES = (
    "Cargo.toml", "package.json", "pyproject.toml", "go.mod",
    "requirements.txt", "setup.py", "build.gradle", "pom.xml",
)

SOURCE_DIRS = ("", "src")

SOURCE_EXT = (
    ".py", ".js", ".ts", ".rs", ".go", ".java", ".rb", ".php",
    ".cs", ".swift", ".kt", ".dart", ".c", ".cpp", ".h", ".vue",
    ".svelte", ".jsx", ".tsx", ".lua", ".sh", ".pl",
)

# substrings that usually mark an entry point
ENTRY_HINTS = (
    "main.", "app.", "index.", "server.", "program.", "__main__.",
    "mod.", "lib.", "init.", "cli.", "run.", "start.", "bot.",
)

NO_EVIDENCE = "[No README or source files found. Analyze from repo name, language, and description]"


# ── records ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RepositoryRecord:
    name: str
    html_url: str
    description: str | None = None
    language: str | None = None
    stars: int = 0
    forks: int = 0
    topics: tuple[str, ...] = field(default_factory=tuple)
    fork: bool = False

    @classmethod
    def from_api(cls, d: dict) -> "RepositoryRecord":
        return cls(
            name=d["name"],
            html_url=d.get("html_url") or "",
            description=d.get("description") or None,
            language=d.get("language") or None,
            stars=int(d.get("stargazers_count") or 0),
            forks=int(d.get("forks_count") or 0),
            topics=tuple(d.get("topics") or ()),
            fork=bool(d.get("fork", False)),
        )


@dataclass(frozen=True)
class Budgets:
    readme: int
    manifest: int
    source: int

def budgets_for(repo_count: int) -> Budgets:
    """Shrink per-file caps for big catalogs so the prompt stays bounded."""
    if repo_count > CFG.crowded:
        return Budgets(CFG.readme_cap_tight, CFG.manifest_cap, CFG.source_cap_tight)
    return Budgets(CFG.readme_cap, CFG.manifest_cap, CFG.source_cap)


# ── base64 ──────────────────────────────────────────────────────────────────

_B64 = {c: i for i, c in enumerate("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/")}

def decode_content(encoded: str) -> str:
    """Decode the base64 `content` field of the contents API into text.

    Whitespace (the API wraps lines at 60 chars) is dropped, unknown symbols
    are skipped and decoding stops at the first `=`. Raises UnicodeDecodeError
    when the bytes are not UTF-8.
    """
    out = bytearray()
    bits = nbits = 0
    for ch in "".join(encoded.split()):
        if ch == "=":
            break
        val = _B64.get(ch)
        if val is None:
            continue
        bits = (bits << 6) | val
        nbits += 6
        if nbits >= 8:
            nbits -= 8
            out.append((bits >> nbits) & 0xFF)
            bits &= (1 << nbits) - 1
    return out.decode("utf-8")


# ── auth ────────────────────────────────────────────────────────────────────

def _headers(token: str = "") -> dict[str, str]:
    h = {
        "Accept": "application/vnd.github+json",
        "User-Agent": CFG.user_agent,
    }
    if token: h["Authorization"] = f"Bearer {token}"
    return h

def _rate_limit_details(r: httpx.Response) -> str:
    remaining = r.headers.get("X-RateLimit-Remaining")
    limit = r.headers.get("X-RateLimit-Limit")
    reset = r.headers.get("X-RateLimit-Reset")
    parts: list[str] = []
    if remaining is not None: parts.append(f"remaining={remaining}")
    if limit is not None: parts.append(f"limit={limit}")
    if reset and reset.isdigit():
        dt = datetime.fromtimestamp(int(reset), tz=timezone.utc)
        parts.append(f"reset_utc={dt.isoformat()}")
    return " ".join(parts)

def _not_found(r: httpx.Response, msg: str) -> NotFound:
    if r.status_code in (403, 429) and r.headers.get("X-RateLimit-Remaining") == "0":
        msg = f"{msg} (GitHub rate limit hit: {_rate_limit_details(r)})"
    return NotFound(msg)


# ── github api calls ───────────────────────────────────────────────────────

async def _get(http: httpx.AsyncClient, url: str, token: str, ctx: str) -> httpx.Response:
    try:
        return await http.get(url, headers=_headers(token))
    except httpx.HTTPError as e:
        raise NetworkError(f"{ctx} failed: {e}") from e

async def fetch_user(http, account: str, token: str = "") -> dict:
    r = await _get(http, f"{CFG.api_base}/users/{account}", token, "user lookup")
    if r.status_code != 200:
        raise _not_found(r, f"GitHub user '{account}' not found ({r.status_code})")
    d = r.json()
    return {"avatar_url": d.get("avatar_url", ""), "html_url": d.get("html_url", "")}

async def list_repositories(http, account: str, token: str = "") -> list[RepositoryRecord]:
    """Owner repos sorted by stars, forks dropped."""
    url = f"{CFG.api_base}/users/{account}/repos?sort=stars&per_page={CFG.page_size}&type=owner"
    r = await _get(http, url, token, "repo listing")
    if r.status_code != 200:
        raise _not_found(r, f"Failed to fetch repos for '{account}' ({r.status_code})")
    repos = [RepositoryRecord.from_api(d) for d in r.json()]
    kept = [repo for repo in repos if not repo.fork]
    log.info(f"{account}: {len(kept)} repos ({len(repos) - len(kept)} forks skipped)")
    return kept

async def fetch_file(http, account: str, repo: str, path: str, token: str = "") -> str:
    url = f"{CFG.api_base}/repos/{account}/{repo}/contents/{path}"
    r = await _get(http, url, token, f"content fetch for {path}")
    if r.status_code != 200:
        raise NotFound(f"File not found: {path} in {account}/{repo}")
    d = r.json()
    if not isinstance(d, dict) or d.get("encoding") != "base64" or d.get("content") is None:
        raise FormatError(f"Unexpected encoding for {account}/{repo}/{path}")
    return decode_content(d["content"])

async def list_dir(http, account: str, repo: str, sub: str = "", token: str = "") -> list[str]:
    """File names (not dirs) in one directory, prefixed with `sub/`."""
    url = f"{CFG.api_base}/repos/{account}/{repo}/contents/{sub}"
    r = await _get(http, url, token, f"listing of {repo}/{sub}")
    if r.status_code != 200:
        raise UpstreamStatusError(r.status_code, r.text, f"listing of {repo}/{sub}")
    prefix = f"{sub}/" if sub else ""
    return [f"{prefix}{it['name']}" for it in r.json()
            if isinstance(it, dict) and it.get("type") == "file" and it.get("name")]


# ── file classification ─────────────────────────────────────────────────────

def is_source(name: str) -> bool:
    return name.lower().endswith(SOURCE_EXT)

def is_entry(name: str) -> bool:
    low = name.lower()
    return any(h in low for h in ENTRY_HINTS)

def pick_sources(files: list[str], limit: int = CFG.max_sources) -> list[str]:
    """Entry-looking source files first; any source file if there are none."""
    sources = [f for f in files if is_source(f)]
    entries = [f for f in sources if is_entry(f)]
    return (entries or sources)[:limit]


# ── evidence ────────────────────────────────────────────────────────────────

def _header(repo: RepositoryRecord) -> str:
    line = (f"Repo: {repo.name} | Stars: {repo.stars} | Forks: {repo.forks} | "
            f"Language: {repo.language or 'N/A'} | Description: {repo.description or 'N/A'}")
    if repo.topics:
        line += f" | Topics: {', '.join(repo.topics)}"
    return line

async def _try_file(http, account, repo, path, token) -> str | None:
    try:
        return await fetch_file(http, account, repo, path, token)
    except (PipelineError, ValueError) as e:
        log.debug(f"{repo}/{path}: {e}")
        return None

async def _first_hit(http, account, repo, names, token) -> tuple[str, str] | None:
    for name in names:
        body = await _try_file(http, account, repo, name, token)
        if body is not None:
            return name, body
    return None

async def _discover(http, account, repo, token) -> list[str]:
    files: list[str] = []
    for sub in SOURCE_DIRS:
        try:
            files.extend(await list_dir(http, account, repo, sub, token))
        except (PipelineError, ValueError) as e:
            log.debug(f"{repo}: {e}")
    return files

async def evidence_for(http, account: str, repo: RepositoryRecord, caps: Budgets, token: str = "") -> str:
    parts = [_header(repo)]

    readme = await _first_hit(http, account, repo.name, README_NAMES, token)
    if readme:
        parts.append(f"README (truncated):\n{readme[1][:caps.readme]}")

    manifest = await _first_hit(http, account, repo.name, MANIFEST_NAMES, token)
    if manifest:
        parts.append(f"{manifest[0]} (truncated):\n{manifest[1][:caps.manifest]}")

    if readme:
        return "\n".join(parts)

    # no readme: look at the code itself
    files = await _discover(http, account, repo.name, token)
    fetched = 0
    if files:
        parts.append(f"FILE STRUCTURE: [{', '.join(files[:CFG.listing_preview])}]")
        for path in pick_sources(files):
            body = await _try_file(http, account, repo.name, path, token)
            if body is None:
                continue
            parts.append(f"SOURCE CODE ({path}):\n{body[:caps.source]}")
            fetched += 1
        log.info(f"  {repo.name}: {len(files)} files discovered, {fetched} source files fetched")
    if not fetched:
        parts.append(NO_EVIDENCE)
        log.info(f"  {repo.name}: no source files found, metadata only")
    return "\n".join(parts)


# ── public interface ────────────────────────────────────────────────────────

async def build_evidence(http, account: str, repos: list[RepositoryRecord], token: str = "") -> list[str]:
    """One evidence string per repo, same order. Never raises on fetch failures."""
    caps = budgets_for(len(repos))
    out = []
    for i, repo in enumerate(repos, 1):
        log.info(f"({i}/{len(repos)}) Gathering evidence for {repo.name}")
        out.append(await evidence_for(http, account, repo, caps, token))
    return out
