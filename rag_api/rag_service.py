"""
RAG service for question answering over the knowledge base.

question -> variants -> search -> bounded context -> generation -> citation
arbitration -> reply + evidence + suggested actions
"""
import asyncio
import re
import time
import uuid
from pathlib import Path

from fastapi import HTTPException

from rag_api.dependencies import RagDependencies
from rag_api.logging_config import get_logger, request_id_ctx
from rag_api.models import Action, AskMeta, AskResponse, ChatMeta, ChatResponse, ErrorResponse, EvidenceOut, Message
from rag_api.query_variants import make_variants
from rag_api.streaming import build_chat_prompt
from retrieval.context import assemble_context, context_sources, format_context_blocks
from retrieval.errors import ErrorKind, GenerationTimeout, RetrievalError
from retrieval.models import Evidence, SearchRequest

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are the operations knowledge-base assistant. Answer technically and concisely, "
    "with actionable steps (DevOps, Linux, Terraform, Proxmox, monitoring, security). "
    "If the question is out of scope, say so briefly and steer back to the project."
)

PROMPT_RULES = [
    "Rely STRICTLY on the provided CONTEXT.",
    "If some information is not in the context, say so clearly ('I did not find it').",
    "Be technical and concise.",
    "Do NOT put 'Sources:' in the middle of the answer.",
    "End with exactly ONE line: Sources: <file1>, <file2>",
]

NO_CONTEXT_REPLY = "I did not find relevant information in the knowledge base to answer precisely."
NO_CHAT_REPLY = "Sorry, I could not generate an answer."

# Files the UI can open with the show_file action
SHOWABLE_FILE = re.compile(r"\.(md|txt|sh|log)$", re.IGNORECASE)
MAX_SHOW_FILE_ACTIONS = 3

# Every ErrorKind must have an HTTP status
ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INDEX_NOT_FOUND: 503,
    ErrorKind.INDEX_INVALID: 503,
    ErrorKind.EMBED_DIM_MISMATCH: 500,
    ErrorKind.EMBEDDING_PROVIDER_ERROR: 502,
    ErrorKind.GENERATION_TIMEOUT: 504,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.GENERATION_ERROR: 502,
}


def error_response(err: RetrievalError, rid: str, duration_ms: int) -> tuple[int, dict]:
    """HTTP status and body for a pipeline error."""
    body = ErrorResponse(
        error=err.kind.value,
        message=str(err),
        rid=rid,
        duration_ms=duration_ms,
        details=err.details(),
    )
    return ERROR_STATUS[err.kind], body.model_dump()


def last_user_question(messages: list[Message]) -> str:
    for m in reversed(messages or []):
        if m.role == "user":
            return (m.content or "").strip()
    return ""


def build_prompt(system: str, question: str, context: list[Evidence]) -> str:
    rules = "\n- ".join(PROMPT_RULES)
    return (
        f"SYSTEM:\n{system}\n\n"
        f"RULES:\n- {rules}\n\n"
        f"CONTEXT:\n{format_context_blocks(context)}\n\n"
        f"QUESTION:\n{question}\n\n"
        f"ASSISTANT:"
    ).strip()


def _action(type_: str, label: str, payload: dict) -> Action:
    return Action(id=uuid.uuid4().hex[:6], type=type_, label=label, payload=payload)


def _followup_action() -> Action:
    return _action(
        "ask_followup",
        "Ask me for the logs",
        {"suggestion": "Can you paste the output of `journalctl -u <service> -n 80`?"},
    )


def suggest_actions(question: str, context: list[Evidence], sources: list[str], kb_dir: str) -> list[Action]:
    """
    Heuristic follow-up actions for the UI, ending with a request for logs.
    """
    actions: list[Action] = []
    kb_root = Path(kb_dir)

    for name in sources[:MAX_SHOW_FILE_ACTIONS]:
        if not SHOWABLE_FILE.search(name):
            continue
        if (kb_root / name).is_file():
            actions.append(_action("show_file", f"Open {name}", {"source": name}))

    q_low = question.lower()
    ctx_low = " ".join(c.text.lower() for c in context)
    if any(t in q_low or t in ctx_low for t in ("dns", "bind")):
        actions.append(_action("propose_fix", "Propose a Bind9 fix", {"topic": "dns_bind9"}))
    if "ssh" in q_low:
        actions.append(_action("propose_fix", "Harden SSH", {"topic": "ssh_hardening"}))

    actions.append(_followup_action())
    return actions


async def answer_question(messages: list[Message], deps: RagDependencies) -> AskResponse:
    """
    Answer the last user message using retrieval-augmented generation.

    Search and generation share one deadline (REQUEST_TIMEOUT_SECONDS); the
    arbiter's referee pass gets whatever budget is left, never more.

    Raises:
        HTTPException(400): no user question.
        RetrievalError: index, embedding or generation failure (see ERROR_STATUS).
    """
    cfg = deps.settings
    started = time.perf_counter()
    rid = request_id_ctx.get()

    question = last_user_question(messages)
    if not question:
        raise HTTPException(status_code=400, detail="A non-empty user message is required.")

    variants = make_variants(question, cfg.rag_qvariants)
    search_request = SearchRequest(
        query_variants=variants,
        top_k=cfg.rag_top_k,
        min_score=cfg.rag_min_score,
        use_mmr=cfg.mmr_enabled,
        preview_length=cfg.rag_preview_length,
        mmr_lambda=cfg.mmr_lambda,
    )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + cfg.request_timeout_seconds

    try:
        async with asyncio.timeout_at(deadline):
            hits = await deps.backend.search(search_request)
            context = assemble_context(hits, cfg.rag_max_context_chars)

            if not context:
                duration_ms = int((time.perf_counter() - started) * 1000)
                logger.info(
                    f"rag_request | mode=none | variants={len(variants)} | hits={len(hits)} | "
                    f"duration_ms={duration_ms}"
                )
                return AskResponse(
                    reply=NO_CONTEXT_REPLY,
                    accepted=True,
                    meta=AskMeta(rid=rid, duration_ms=duration_ms),
                    actions=[_followup_action()],
                )

            sources = context_sources(context)
            prompt = build_prompt(SYSTEM_PROMPT, question, context)
            draft = await deps.generator.generate(prompt)
    except TimeoutError as e:
        raise GenerationTimeout(
            f"Request exceeded the {cfg.request_timeout_seconds}s deadline"
        ) from e

    result = await deps.arbiter.arbitrate(
        draft,
        sources,
        question=question,
        context=context,
        timeout=max(0.0, deadline - loop.time()),
    )

    evidence = [
        EvidenceOut(source=h.source, score=round(h.score, 3), preview=h.preview)
        for h in hits
    ]
    actions = suggest_actions(question, context, sources, cfg.kb_dir)
    duration_ms = int((time.perf_counter() - started) * 1000)

    logger.info(
        f"rag_request | mode=rag | arbiter={result.mode} | accepted={result.accepted} | "
        f"reason={result.reason} | variants={len(variants)} | hits={len(hits)} | "
        f"context={len(context)} | sources={sources} | q_chars={len(question)} | "
        f"a_chars={len(result.final_text)} | duration_ms={duration_ms}"
    )

    return AskResponse(
        reply=result.final_text,
        accepted=result.accepted,
        meta=AskMeta(
            rid=rid,
            duration_ms=duration_ms,
            sources=sources,
            evidence=evidence,
            arbiter=result.mode,
        ),
        actions=actions,
    )


async def answer_chat(messages: list[Message], deps: RagDependencies) -> ChatResponse:
    """
    Plain chat answer over the sanitized transcript, without retrieval.

    Raises:
        HTTPException(400): nothing left after sanitizing the turns.
        RetrievalError: generation failure or deadline (see ERROR_STATUS).
    """
    cfg = deps.settings
    started = time.perf_counter()

    safe, prompt = build_chat_prompt(messages, SYSTEM_PROMPT)
    if not safe:
        raise HTTPException(status_code=400, detail="Empty content.")

    try:
        async with asyncio.timeout(cfg.request_timeout_seconds):
            text = await deps.generator.generate(prompt)
    except TimeoutError as e:
        raise GenerationTimeout(
            f"Request exceeded the {cfg.request_timeout_seconds}s deadline"
        ) from e

    reply = (text or "").strip() or NO_CHAT_REPLY
    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        f"chat_request | mode=plain | turns={len(safe)} | q_chars={len(safe[-1]['content'])} | "
        f"a_chars={len(reply)} | duration_ms={duration_ms}"
    )
    return ChatResponse(reply=reply, meta=ChatMeta(rid=request_id_ctx.get(), duration_ms=duration_ms))
