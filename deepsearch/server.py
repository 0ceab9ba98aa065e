"""FastAPI server with SSE streaming of research progress."""

import asyncio
import json
import logging
import os
import queue
import uuid
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from . import graph
from .config import AVAILABLE_MODELS, SEARCH_PROVIDERS, get_config
from .models import AnswerAction, ResearchResult, TrackerContext
from .persistence import SupabaseSessionSink
from .providers import list_providers
from .search import SearchUnauthorizedError
from .tracking import ActionTracker, TokenTracker

load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "0.1.0"

app = FastAPI(
    title="deepsearch API",
    description="Budget-bounded web research agent with real-time streaming",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        os.environ.get("FRONTEND_URL", "http://localhost:3000"),
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── request / response models ───────────────────────────────────────

class ChatMessage(BaseModel):
    role: str
    content: Any


class ResearchRequest(BaseModel):
    query: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    token_budget: int = 1_000_000
    max_bad_attempts: int = 2
    num_returned_urls: int = 100
    no_direct_answer: bool = False
    boost_hostnames: List[str] = Field(default_factory=list)
    bad_hostnames: List[str] = Field(default_factory=list)
    only_hostnames: List[str] = Field(default_factory=list)
    max_ref: int = 10
    min_rel_score: float = 0.80
    language_code: Optional[str] = None
    search_language_code: Optional[str] = None
    search_provider: Optional[str] = None
    with_images: bool = False
    team_size: int = 1


# ── helpers ──────────────────────────────────────────────────────────

def serialize_event(event_type: str, data: dict) -> str:
    payload = json.dumps({"type": event_type, **data}, default=str)
    return f"data: {payload}\n\n"


def _get_error_hint(error_msg: str) -> str:
    lower = error_msg.lower()
    if "402" in lower or "payment" in lower:
        return "API credits depleted. Check your billing at the provider's dashboard."
    if "unauthorized" in lower and ("search" in lower or "firecrawl" in lower or "serper" in lower or "brave" in lower):
        return "Search provider rejected its API key. Check SEARCH_PROVIDER and its key in .env."
    if "401" in lower or "unauthorized" in lower:
        return "Invalid API key. Check your .env file."
    if "403" in lower:
        return "Access denied. Your API key may lack permissions for this model."
    if "404" in lower or "not found" in lower:
        return "Model not found or temporarily unavailable."
    if "rate" in lower or "429" in lower:
        return "Rate limited. Retry in a moment or lower STEP_SLEEP pressure."
    return ""


def _run_kwargs(request: ResearchRequest) -> Dict[str, Any]:
    if not request.query and not request.messages:
        raise HTTPException(status_code=422, detail="Either 'query' or 'messages' is required")
    kwargs = request.model_dump(exclude={"query", "messages"})
    kwargs["question"] = request.query
    kwargs["messages"] = [m.model_dump() for m in request.messages] or None
    return kwargs


def result_payload(result: ResearchResult) -> Dict[str, Any]:
    answer = result.result
    payload: Dict[str, Any] = {
        "action": answer.action,
        "think": answer.think,
        "visited_urls": result.visited_urls,
        "read_urls": result.read_urls,
        "usage": result.context.token_tracker.get_total_usage_snake_case(),
    }
    if isinstance(answer, AnswerAction):
        payload.update({
            "answer": answer.answer,
            "md_answer": answer.md_answer,
            "references": [r.model_dump() for r in answer.references],
            "is_aggregated": answer.is_aggregated,
        })
    if result.image_references is not None:
        payload["image_references"] = [i.model_dump() for i in result.image_references]
    return payload


def _translate_event(evt: dict) -> List[str]:
    """Translate a tracker event into SSE events."""
    t = evt.get("type", "")
    if t == "action":
        action = evt.get("action") or {}
        return [serialize_event("action", {
            "total_step": evt.get("total_step", 0),
            "action": action.get("action") if isinstance(action, dict) else action,
            "think": action.get("think", "") if isinstance(action, dict) else "",
            "detail": action,
            "gaps": evt.get("gaps", []),
        })]
    if t == "think":
        return [serialize_event("thinking", {"message": evt.get("think", "")})]
    if t == "usage":
        return [serialize_event("usage", {
            "tool": evt.get("tool", ""),
            "total_tokens": evt.get("total_tokens", 0),
        })]
    if t:
        return [serialize_event("log", {"message": json.dumps(evt, default=str)[:200], "event_type": t})]
    return []


# ── SSE generator ────────────────────────────────────────────────────

async def research_stream_generator(request: ResearchRequest, run_id: str):
    event_queue: queue.Queue = queue.Queue()

    def on_event(event: dict):
        event_queue.put(event)

    context = TrackerContext(token_tracker=TokenTracker(request.token_budget), action_tracker=ActionTracker())
    context.action_tracker.add_listener(on_event)
    context.token_tracker.add_listener(on_event)

    def _drain(limit: Optional[int] = None):
        drained = []
        while limit is None or len(drained) < limit:
            try:
                evt = event_queue.get_nowait()
            except queue.Empty:
                break
            drained.extend(_translate_event(evt))
        return drained

    cfg = get_config()
    yield serialize_event("phase-update", {
        "phase": "init",
        "message": f"Starting research (provider: {cfg.default_provider}, model: {cfg.default_model})",
        "run_id": run_id,
    })

    task: Optional[asyncio.Task] = None
    try:
        task = asyncio.create_task(graph.get_response(
            existing_context=context,
            sink=SupabaseSessionSink(run_id),
            **_run_kwargs(request),
        ))
        while not task.done():
            for sse in _drain(50):
                yield sse
            await asyncio.sleep(0.1)
        for sse in _drain():
            yield sse

        try:
            result = task.result()
            yield serialize_event("final-result", result_payload(result))
            yield serialize_event("complete", {
                "message": "Research complete!",
                "run_id": run_id,
                "usage": context.token_tracker.get_total_usage_snake_case(),
            })
        except Exception as e:
            logger.error("Research run %s failed: %s", run_id, e)
            yield serialize_event("error", {"error": str(e), "phase": "research", "hint": _get_error_hint(str(e))})

    except Exception as e:
        yield serialize_event("error", {"error": str(e), "phase": "unknown", "hint": _get_error_hint(str(e))})

    finally:
        if task is not None and not task.done():
            logger.info("Client left run %s early, cancelling it", run_id)
            task.cancel()
        context.action_tracker.remove_listener(on_event)
        context.token_tracker.remove_listener(on_event)


# ── routes ───────────────────────────────────────────────────────────

@app.post("/api/research")
async def run_research(request: ResearchRequest):
    run_id = str(uuid.uuid4())
    try:
        result = await graph.get_response(sink=SupabaseSessionSink(run_id), **_run_kwargs(request))
    except SearchUnauthorizedError as e:
        raise HTTPException(status_code=401, detail=str(e))
    return {"run_id": run_id, **result_payload(result)}


@app.post("/api/research/stream")
async def stream_research(request: ResearchRequest):
    _run_kwargs(request)
    run_id = str(uuid.uuid4())
    return StreamingResponse(
        research_stream_generator(request, run_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@app.get("/api/config")
async def get_app_config():
    """Return current provider configuration (no secrets)."""
    cfg = get_config()
    return {
        "default_provider": cfg.default_provider,
        "default_model": cfg.default_model,
        "embedding_provider": cfg.embedding_provider,
        "embedding_model": cfg.embedding_model,
        "search_provider": cfg.search_provider,
        "search_providers": SEARCH_PROVIDERS,
        "max_steps": cfg.max_steps,
        "available_providers": list_providers(),
        "available_models": AVAILABLE_MODELS,
        "role_overrides": {
            role: {"provider": rc.provider, "model": rc.model}
            for role, rc in cfg.roles.items()
        },
    }


@app.get("/api/health")
async def health_check():
    cfg = get_config()
    return {
        "status": "healthy",
        "version": VERSION,
        "provider": cfg.default_provider,
        "model": cfg.default_model,
        "env_check": {
            "gemini_key": bool(os.environ.get("GEMINI_API_KEY")),
            "openai_key": bool(os.environ.get("OPENAI_API_KEY")),
            "anthropic_key": bool(os.environ.get("ANTHROPIC_API_KEY")),
            "hf_token": bool(os.environ.get("HF_TOKEN")),
            "firecrawl_key": bool(os.environ.get("FIRECRAWL_API_KEY")),
            "serper_key": bool(os.environ.get("SERPER_API_KEY")),
            "brave_key": bool(os.environ.get("BRAVE_API_KEY")),
            "supabase": bool(os.environ.get("SUPABASE_URL")),
            "langsmith": bool(os.environ.get("LANGSMITH_API_KEY")),
        },
    }
