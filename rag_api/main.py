"""
FastAPI entry point: answer, chat, stream, agent and knowledge-base endpoints.

Run with: uvicorn rag_api.main:app
"""
from contextlib import asynccontextmanager
import secrets
import time
import logging
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from rag_api.kb_files import resolve_kb_file
from rag_api.agent import run_agent
from rag_api.models import AgentRequest, AgentResponse, AskRequest, AskResponse, ChatResponse, KbFileResponse
from rag_api.logging_config import setup_logging, get_logger, request_id_ctx, new_request_id
from rag_api.rag_service import SYSTEM_PROMPT, answer_chat, answer_question, error_response, last_user_question
from rag_api.streaming import build_chat_prompt, stream_answer
from rag_api.dependencies import RagDependencies, get_rag_deps
from rag_api.config import settings
from retrieval.errors import RetrievalError

logger = get_logger(__name__)

# Read-only KB file access cap
MAX_KB_FILE_BYTES = 200 * 1024

# Request fields never sent to Sentry
SCRUBBED_HEADERS = ("authorization", "x-api-key", "cookie")

# /ask* limit, keyed by client address
limiter = Limiter(key_func=get_remote_address)


# ============== Admin access ==============

def verify_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    """
    Guard for /kb/reload.

    With no API_KEY configured the endpoint is open (local development).
    """
    expected = settings.api_key
    if not expected:
        return
    # compare_digest: no early exit on the first differing byte
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Missing or invalid X-API-Key header.")


def _env_summary() -> dict:
    return {
        "RAG_TOP_K": settings.rag_top_k,
        "RAG_MIN_SCORE": settings.rag_min_score,
        "RAG_QVARIANTS": settings.rag_qvariants,
        "RAG_ARBITER": settings.rag_arbiter,
        "RAG_ARBITER_PARTIAL": settings.rag_arbiter_partial,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fail-soft readiness check: a missing index must not prevent startup
    try:
        deps = app.dependency_overrides.get(get_rag_deps, get_rag_deps)()
        stats = deps.backend.ensure_ready()
        logger.info(f"search_backend_ready | backend={deps.backend.name} | docs={stats.get('doc_count')}")
    except RetrievalError as e:
        logger.warning(f"search_backend_not_ready | error={e.kind.value} | {e}")
    except Exception as e:
        logger.warning(f"search_backend_not_ready | err={type(e).__name__}: {e}")
        sentry_sdk.capture_exception(e)
    yield


app = FastAPI(title="Evidence RAG API", lifespan=lifespan)
setup_logging(settings.log_level)


# ============== Error reporting ==============

def scrub_event(event: dict, hint: dict) -> dict:
    """Drop request bodies, cookies and credentials before an event leaves the process."""
    request_info = event.get("request")
    if request_info:
        request_info.pop("data", None)
        request_info.pop("cookies", None)
        request_info["headers"] = {
            k: v for k, v in (request_info.get("headers") or {}).items()
            if k.lower() not in SCRUBBED_HEADERS
        }
    return event


if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[FastApiIntegration()],
        send_default_pii=False,
        before_send=scrub_event,
    )
    logger.info(f"sentry enabled | environment={settings.sentry_environment}")


# ============== Middleware ==============

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Propagate X-Request-ID (or mint one) and log one access line per request."""
    rid = request.headers.get("X-Request-ID") or new_request_id()
    token = request_id_ctx.set(rid)
    request.state.started = time.time()
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        logging.getLogger("rag_api.access").info(
            "%s %s -> %s (%dms)",
            request.method,
            request.url.path,
            response.status_code,
            int((time.time() - request.state.started) * 1000),
        )
        return response
    finally:
        request_id_ctx.reset(token)


async def retrieval_error_handler(request: Request, exc: RetrievalError):
    """Map every pipeline error kind to its status and stable error id."""
    started = getattr(request.state, "started", None) or time.time()
    status, body = error_response(exc, request_id_ctx.get(), int((time.time() - started) * 1000))

    headers = {}
    retry_after = body["details"].get("retry_after_sec")
    if retry_after is not None:
        headers["Retry-After"] = str(int(retry_after))

    log = logger.warning if status < 500 else logger.error
    log(f"request_failed | error={body['error']} | status={status} | {exc}")
    return JSONResponse(status_code=status, content=body, headers=headers)


# ============== Wiring ==============

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(RetrievalError, retrieval_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
logger.info(f"cors | origins={settings.cors_origins}")


# ============== Endpoints ==============

@app.post("/ask", response_model=ChatResponse)
@limiter.limit(settings.rate_limit_ask)
async def ask(request: Request, body: AskRequest, deps: RagDependencies = Depends(get_rag_deps)):
    """Plain chat answer, no retrieval. Rate limited."""
    if not body.messages:
        raise HTTPException(status_code=400, detail="messages[] is required.")
    return await answer_chat(body.messages, deps)


@app.post("/ask/rag", response_model=AskResponse)
@limiter.limit(settings.rate_limit_ask)
async def ask_rag(request: Request, body: AskRequest, deps: RagDependencies = Depends(get_rag_deps)):
    """Answer the last user message from the knowledge base. Rate limited."""
    if not body.messages:
        raise HTTPException(status_code=400, detail="messages[] is required.")
    return await answer_question(body.messages, deps)


@app.post("/ask/stream")
@limiter.limit(settings.rate_limit_ask)
async def ask_stream(request: Request, body: AskRequest, deps: RagDependencies = Depends(get_rag_deps)):
    """Stream a chat answer as Server-Sent Events."""
    if not body.messages:
        raise HTTPException(status_code=400, detail="messages[] is required.")

    safe, prompt = build_chat_prompt(body.messages, SYSTEM_PROMPT)
    if not safe:
        raise HTTPException(status_code=400, detail="Empty content.")

    cfg = deps.settings
    frames = stream_answer(
        prompt,
        deps.generator,
        rid=request_id_ctx.get(),
        split=cfg.stream_split,
        delay_ms=cfg.stream_delay_ms,
        heartbeat_seconds=cfg.stream_heartbeat_seconds,
        timeout=cfg.request_timeout_seconds,
    )
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@app.post("/agent", response_model=AgentResponse)
@limiter.limit(settings.rate_limit_ask)
async def agent(request: Request, body: AgentRequest, deps: RagDependencies = Depends(get_rag_deps)):
    """Tool-using agent over the knowledge base, at most a few tool calls."""
    question = (body.question or "").strip() or last_user_question(body.messages)
    if not question:
        raise HTTPException(status_code=400, detail="question is required.")
    return await run_agent(question, deps)


@app.post("/kb/reload", dependencies=[Depends(verify_api_key)])
def kb_reload(deps: RagDependencies = Depends(get_rag_deps)):
    """Reload the index without restarting. On failure the previous index stays in service."""
    stats = deps.backend.reload()
    return {"backend": deps.backend.name, "env": _env_summary(), "stats": stats}


@app.get("/kb/stats")
def kb_stats(deps: RagDependencies = Depends(get_rag_deps)):
    return {"backend": deps.backend.name, "env": _env_summary(), "stats": deps.backend.stats()}


@app.get("/kb/ready")
def kb_ready(deps: RagDependencies = Depends(get_rag_deps)):
    """Readiness check: embedding provider configured and index loadable."""
    stats = deps.backend.ensure_ready()
    return {"ready": True, "backend": deps.backend.name, "stats": stats}


@app.get("/kb/file", response_model=KbFileResponse)
def kb_file(source: str = Query(""), deps: RagDependencies = Depends(get_rag_deps)):
    """Read-only access to a knowledge-base file by name (first 200 KB)."""
    if not source.strip():
        raise HTTPException(status_code=400, detail="Missing source.")

    full = resolve_kb_file(source, deps.settings.kb_dir)
    data = full.read_bytes()
    return KbFileResponse(
        source=full.name,
        size=len(data),
        truncated=len(data) > MAX_KB_FILE_BYTES,
        content=data[:MAX_KB_FILE_BYTES].decode("utf-8", errors="replace"),
    )


@app.get("/health")
def health_check():
    """Liveness check (no dependency checks, see /kb/ready)."""
    return {"status": "healthy"}
