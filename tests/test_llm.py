import asyncio
import json
from types import SimpleNamespace

import httpx
import openai
import pytest

import llm
from errors import FormatError, NetworkError, ParseError, UpstreamStatusError
from llm import BatchAnalysis, FullAnalysis, ProjectAnalysis, resolve_api_mode, run_analysis

FULL = {
    "hero_title": "Systems Hacker",
    "bio": "Builds things.",
    "projects": [{"name": "alpha", "problem_solved": "p", "detailed_description": "d",
                  "use_cases": ["a", "b"], "tech_stack": ["Rust"]}],
}


# ── api mode ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("url,mode,endpoint", [
    ("https://x/v1", "openai", "https://x/v1/chat/completions"),
    ("https://x/v4/", "openai", "https://x/v4/chat/completions"),
    ("https://x/api", "ollama", "https://x/api/chat"),
    ("https://x:11434", "ollama", "https://x:11434/api/chat"),
    ("https://x/api/generate", "ollama", "https://x/api/chat"),
    ("https://x/api/chat/", "ollama", "https://x/api/chat"),
    ("https://x/openai/v1/chat/completions", "openai", "https://x/openai/v1/chat/completions"),
    ("https://ollama.com", "ollama", "https://ollama.com/api/chat"),
    ("https://x", "openai", "https://x/v1/chat/completions"),
    ("https://x/v10", "openai", "https://x/v10/v1/chat/completions"),
])
def test_resolve_api_mode(url, mode, endpoint):
    assert resolve_api_mode(url) == (mode, endpoint)


# ── prompts ─────────────────────────────────────────────────────────────────

def test_full_prompt_has_branding_and_names():
    p = llm.full_prompt("octocat", ["ev-a", "ev-b"], "English", ["a", "B"])
    assert "GitHub User: octocat" in p
    assert "[a, B]" in p
    assert "ev-a\n\n---\n\nev-b" in p
    assert '"hero_title"' in p and '"bio"' in p
    assert "include ALL 2 repositories" in p
    assert "Respond ENTIRELY in English" in p


def test_batch_prompt_is_projects_only():
    p = llm.batch_prompt(["ev-c"], "German", ["c"])
    assert '"hero_title"' not in p and '"bio"' not in p
    assert '"projects"' in p and "[c]" in p and "in German" in p


# ── parsing ─────────────────────────────────────────────────────────────────

def test_parse_strips_fences():
    raw = "```json\n" + json.dumps(FULL) + "\n```"
    res = llm.parse_reply(raw, FullAnalysis)
    assert res.hero_title == "Systems Hacker"
    assert res.projects[0].use_cases == ["a", "b"]


def test_parse_bare_fence():
    res = llm.parse_reply("```\n{\"projects\": []}\n```", BatchAnalysis)
    assert res.projects == []


def test_parse_error_keeps_raw_text():
    with pytest.raises(ParseError) as ei:
        llm.parse_reply("```json\nSure! here you go {oops\n```", BatchAnalysis)
    assert ei.value.raw == "Sure! here you go {oops"


def test_parse_error_on_wrong_shape():
    with pytest.raises(ParseError):
        llm.parse_reply(json.dumps({"projects": []}), FullAnalysis)


# ── single call ─────────────────────────────────────────────────────────────

def _call(handler, api_url, shape=FullAnalysis, api_key=""):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await llm.call_llm(http, api_url, api_key, "llama3", "PROMPT", "English", shape)
    return asyncio.run(go())


def test_call_ollama():
    seen = []

    def handler(req):
        seen.append(req)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": json.dumps(FULL)}})

    res = _call(handler, "http://localhost:11434/")
    assert isinstance(res, FullAnalysis) and res.bio == "Builds things."

    req = seen[0]
    assert str(req.url) == "http://localhost:11434/api/chat"
    assert "Authorization" not in req.headers
    body = json.loads(req.content)
    assert body["model"] == "llama3"
    assert body["temperature"] == 0.7 and body["stream"] is False
    assert [m["role"] for m in body["messages"]] == ["system", "user"]
    assert "English" in body["messages"][0]["content"]
    assert body["messages"][1]["content"] == "PROMPT"


def test_call_ollama_sends_key():
    seen = []

    def handler(req):
        seen.append(req)
        return httpx.Response(200, json={"message": {"content": '{"projects": []}'}})

    _call(handler, "https://ollama.com", BatchAnalysis, api_key="k")
    assert seen[0].headers["Authorization"] == "Bearer k"


def test_call_ollama_wrong_shape():
    with pytest.raises(FormatError):
        _call(lambda req: httpx.Response(200, json={"choices": []}), "http://h/api")


def test_call_ollama_status():
    with pytest.raises(UpstreamStatusError) as ei:
        _call(lambda req: httpx.Response(503, text="model loading"), "http://h/api")
    assert ei.value.status == 503
    assert ei.value.body == "model loading"


def test_call_ollama_network():
    def boom(req):
        raise httpx.ConnectError("refused", request=req)
    with pytest.raises(NetworkError):
        _call(boom, "http://h/api/chat")


def test_call_openai():
    seen = []

    def handler(req):
        seen.append(req)
        return httpx.Response(200, json={
            "id": "c1", "object": "chat.completion", "created": 0, "model": "llama3",
            "choices": [{"index": 0, "finish_reason": "stop",
                         "message": {"role": "assistant", "content": '{"projects": []}'}}],
        })

    res = _call(handler, "https://api.example.com/v1", BatchAnalysis, api_key="sk-test")
    assert res.projects == []
    req = seen[0]
    assert req.method == "POST"
    assert str(req.url) == "https://api.example.com/v1/chat/completions"
    assert req.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(req.content)
    assert body["temperature"] == 0.7 and body["stream"] is False
    assert len(seen) == 1


def test_call_openai_without_key():
    seen = []

    def handler(req):
        seen.append(req)
        return httpx.Response(200, json={
            "id": "c1", "object": "chat.completion", "created": 0, "model": "llama3",
            "choices": [{"index": 0, "finish_reason": "stop",
                         "message": {"role": "assistant", "content": '{"projects": []}'}}],
        })

    res = _call(handler, "http://localhost:8000/v1", BatchAnalysis, api_key="")
    assert res.projects == []
    assert len(seen) == 1
    assert "Authorization" not in seen[0].headers


def test_call_openai_non_json_body():
    def handler(req):
        return httpx.Response(200, content=b"<html>oops", headers={"content-type": "application/json"})

    with pytest.raises(FormatError):
        _call(handler, "https://h/v1", api_key="k")


def test_call_openai_sdk_error_is_format_error(monkeypatch):
    req = httpx.Request("POST", "https://h/v1/chat/completions")
    err = openai.APIResponseValidationError(response=httpx.Response(200, request=req), body=None)

    class FakeClient:
        def __init__(self, **kw):
            self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

        async def _create(self, **body):
            raise err

    monkeypatch.setattr(llm, "AsyncOpenAI", FakeClient)
    with pytest.raises(FormatError):
        _call(lambda r: httpx.Response(500), "https://h/v1", api_key="k")


def test_call_openai_missing_content():
    with pytest.raises(FormatError):
        _call(lambda req: httpx.Response(200, json={"choices": []}), "https://h/v1", api_key="k")


def test_call_openai_status_not_retried():
    seen = []

    def handler(req):
        seen.append(req)
        return httpx.Response(500, json={"error": {"message": "down"}})

    with pytest.raises(UpstreamStatusError) as ei:
        _call(handler, "https://h/v1", api_key="k")
    assert ei.value.status == 500
    assert len(seen) == 1


def test_call_openai_network():
    def boom(req):
        raise httpx.ConnectError("refused", request=req)
    with pytest.raises(NetworkError):
        _call(boom, "https://h/v1", api_key="k")


# ── batching ────────────────────────────────────────────────────────────────

def _fake_ask(fail_on=(), calls=None):
    calls = [] if calls is None else calls

    async def ask(prompt, shape):
        idx = len(calls)
        calls.append((prompt, shape))
        if idx in fail_on:
            raise UpstreamStatusError(500, "boom", "LLM API")
        names = prompt.split("[", 1)[1].split("]", 1)[0].split(", ")
        projects = [ProjectAnalysis(name=n, problem_solved=f"solves {n}") for n in names]
        if shape is FullAnalysis:
            return FullAnalysis(hero_title="Hero", bio="Bio", projects=projects)
        return BatchAnalysis(projects=projects)

    return ask


def test_chunks():
    assert llm.chunks(0, 8) == []
    assert llm.chunks(17, 8) == [(0, 8), (8, 16), (16, 17)]
    with pytest.raises(ValueError):
        llm.chunks(3, 0)


def test_outcome_policy():
    err = RuntimeError("x")
    assert llm.outcome_for(0, ["a"], error=err).kind == "fatal"
    assert llm.outcome_for(3, ["a"], error=err).kind == "skipped"
    assert llm.outcome_for(0, ["a"], result=BatchAnalysis(projects=[])).kind == "ok"


def test_run_analysis_batches_in_order():
    names = [f"r{i}" for i in range(20)]
    calls = []
    res = asyncio.run(run_analysis(_fake_ask(calls=calls), "octocat", names,
                                   [f"ev {n}" for n in names], "English"))
    assert [shape for _, shape in calls] == [FullAnalysis, BatchAnalysis, BatchAnalysis]
    assert "ev r7" in calls[0][0] and "ev r8" not in calls[0][0]
    assert "ev r19" in calls[2][0]
    assert res.hero_title == "Hero" and res.bio == "Bio"
    assert [p.name for p in res.projects] == names
    assert [o.kind for o in res.outcomes] == ["ok", "ok", "ok"]


def test_later_batch_failure_is_skipped():
    names = [f"r{i}" for i in range(20)]
    res = asyncio.run(run_analysis(_fake_ask(fail_on={1}), "octocat", names, names, "English"))
    assert [o.kind for o in res.outcomes] == ["ok", "skipped", "ok"]
    assert [p.name for p in res.projects] == names[:8] + names[16:]
    assert res.hero_title == "Hero"


def test_first_batch_failure_is_fatal():
    names = [f"r{i}" for i in range(20)]
    calls = []
    with pytest.raises(UpstreamStatusError):
        asyncio.run(run_analysis(_fake_ask(fail_on={0}, calls=calls), "octocat", names, names, "English"))
    assert len(calls) == 1


def test_custom_batch_size():
    calls = []
    names = ["a", "b", "c"]
    asyncio.run(run_analysis(_fake_ask(calls=calls), "octocat", names, names, "English", batch_size=1))
    assert len(calls) == 3
