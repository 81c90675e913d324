#!/usr/bin/env python3
"""
Git2Page – turn a GitHub account into a portfolio page.

Run:  uvicorn main:app --port 5001
Env:  LLM_API_URL, LLM_API_KEY, LLM_MODEL, GITHUB_TOKEN (all optional, also read from .env)
"""

import logging
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from errors import NetworkError, NotFound, PipelineError, UpstreamStatusError
from portfolio import DEFAULT_LANGUAGE, Portfolio, Settings, build_portfolio, env_or

load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
log = logging.getLogger("git2page")

# ── app ─────────────────────────────────────────────────────────────────────

app = FastAPI(title="Git2Page", version="1.0.0")

class Req(BaseModel):
    github_username: str = Field(..., examples=["torvalds"])
    api_url: str
    api_key: str
    model_name: str
    github_token: str = ""
    language: str = DEFAULT_LANGUAGE

class ConfigResp(BaseModel):
    api_url: str
    model: str
    has_github_token: bool
    has_api_key: bool

class Err(BaseModel):
    status: str = "error"
    message: str


@app.exception_handler(RequestValidationError)
async def bad_body(request: Request, exc: RequestValidationError):
    log.warning(f"Invalid request body: {exc.errors()}")
    return JSONResponse(status_code=400, content={"detail": {"status": "error",
                        "message": f"Invalid request: {exc.errors()}"}})


# ── endpoints ───────────────────────────────────────────────────────────────

@app.get("/config", response_model=ConfigResp)
async def config():
    # never echo secrets, just whether they exist
    return ConfigResp(
        api_url=env_or("", "LLM_API_URL"),
        model=env_or("", "LLM_MODEL"),
        has_github_token=bool(env_or("", "GITHUB_TOKEN")),
        has_api_key=bool(env_or("", "LLM_API_KEY")),
    )


@app.post("/analyze", response_model=Portfolio,
          responses={400: {"model": Err}, 404: {"model": Err},
                     500: {"model": Err}, 502: {"model": Err}})
async def analyze(req: Req):
    username = req.github_username.strip()
    if not username:
        raise HTTPException(400, {"status": "error", "message": "github_username must not be empty."})

    s = Settings.resolve(req.api_url, req.api_key, req.model_name, req.github_token, req.language)
    log.info(f"Request for {username}: api_url={s.api_url} model={s.model_name} language={s.language}")

    try:
        return await build_portfolio(username, s)
    except NotFound as e:
        raise HTTPException(404, {"status": "error", "message": str(e)})
    except (NetworkError, UpstreamStatusError) as e:
        raise HTTPException(502, {"status": "error", "message": f"Upstream error: {e}"})
    except PipelineError as e:
        raise HTTPException(502, {"status": "error", "message": f"LLM error: {e}"})
    except Exception as e:
        log.exception("Analysis blew up")
        raise HTTPException(500, {"status": "error", "message": f"Analysis failed: {e}"})
