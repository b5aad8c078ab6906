"""
Tool-using agent behind POST /agent.

Each step sends the question, the tool results gathered so far and the tool
catalogue as one JSON document; the model answers with a JSON object that
either calls a tool ({"action": {"tool", "args"}}) or ends the loop
({"final": "..."}). The loop stops after MAX_STEPS tool calls.

Tools reuse the search backend and the knowledge-base file guard, so the
agent can read exactly what /ask/rag and /kb/file can.
"""
import asyncio
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fastapi import HTTPException

from rag_api.dependencies import RagDependencies
from rag_api.kb_files import resolve_kb_file
from rag_api.logging_config import get_logger, request_id_ctx
from rag_api.models import AgentMeta, AgentResponse, AgentStep
from retrieval.errors import GenerationTimeout, RetrievalError
from retrieval.models import SearchRequest

logger = get_logger(__name__)

MAX_STEPS = 3
SEARCH_RESULTS = 3
SHOW_FILE_CHARS = 4000

INVALID_REPLY = "The agent returned an invalid response."
STEP_LIMIT_REPLY = "I could not answer within the step limit."

KNOWN_FIXES = {
    "dns_bind9": "Check named.conf, open port 53 UDP/TCP, then restart the service.",
    "ssh_hardening": "Disable root login, require keys, enable fail2ban and move the port.",
}
NO_FIX = "No fix available for this topic."

RESPONSE_FORMAT = {"action": {"tool": "string", "args": {}}, "thought": "string", "final": "string"}

# Models often wrap the JSON object in a markdown fence
_FENCE = re.compile(r"^\s*```(?:json)?\s*(?P<body>.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)


@dataclass
class Tool:
    name: str
    desc: str
    params: dict
    run: Callable[[dict], Awaitable[Any]]

    def describe(self) -> dict:
        return {"name": self.name, "desc": self.desc, "params": self.params}


def parse_model_output(raw: str) -> dict | None:
    """The model's JSON object, or None when it is not one."""
    text = str(raw or "").strip()
    match = _FENCE.match(text)
    if match:
        text = match.group("body")
    try:
        obj = json.loads(text or "{}")
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


class Agent:
    """A bounded plan-act loop over the knowledge-base tools."""

    def __init__(self, deps: RagDependencies, max_steps: int = MAX_STEPS):
        self.deps = deps
        self.max_steps = max_steps
        self.tools = {
            t.name: t
            for t in (
                Tool("search_kb", "Search the knowledge base", {"query": "string"}, self._search_kb),
                Tool("show_file", "Show an allowed knowledge-base file", {"source": "string"}, self._show_file),
                Tool("propose_fix", "Propose a fix for a known topic", {"topic": "string"}, self._propose_fix),
                Tool("ask_followup", "Suggest a follow-up question", {"suggestion": "string"}, self._ask_followup),
            )
        }

    async def _search_kb(self, args: dict) -> list[dict]:
        cfg = self.deps.settings
        request = SearchRequest(
            query_variants=[str(args.get("query") or "")],
            top_k=SEARCH_RESULTS,
            min_score=cfg.rag_min_score,
            use_mmr=cfg.mmr_enabled,
            preview_length=cfg.rag_preview_length,
            mmr_lambda=cfg.mmr_lambda,
        )
        hits = await self.deps.backend.search(request)
        return [{"source": h.source, "score": round(h.score, 3), "preview": h.preview} for h in hits]

    async def _show_file(self, args: dict) -> str:
        full = resolve_kb_file(str(args.get("source") or ""), self.deps.settings.kb_dir)
        text = await asyncio.to_thread(full.read_text, encoding="utf-8", errors="replace")
        return text[:SHOW_FILE_CHARS]

    async def _propose_fix(self, args: dict) -> str:
        return KNOWN_FIXES.get(str(args.get("topic") or ""), NO_FIX)

    async def _ask_followup(self, args: dict) -> str:
        return str(args.get("suggestion") or "") or "Can you give more details?"

    def _prompt(self, question: str, context: list[dict]) -> str:
        return json.dumps(
            {
                "instructions": "Reply with ONE JSON object: call a tool with 'action' or answer with 'final'.",
                "question": question,
                "context": context,
                "tools": [t.describe() for t in self.tools.values()],
                "format": RESPONSE_FORMAT,
            },
            ensure_ascii=False,
        )

    async def run(self, question: str) -> tuple[str, list[AgentStep]]:
        """
        Run the loop and return (reply, tool calls made).

        Generation errors propagate; tool errors are recorded as steps and
        shown to the model on the next turn.
        """
        context: list[dict] = []
        steps: list[AgentStep] = []

        for _ in range(self.max_steps):
            raw = await self.deps.generator.generate(self._prompt(question, context))
            obj = parse_model_output(raw)
            if obj is None:
                logger.warning(f"agent invalid output | chars={len(raw or '')}")
                return INVALID_REPLY, steps
            if obj.get("final"):
                return str(obj["final"]), steps

            action = obj.get("action")
            if not isinstance(action, dict):
                continue
            name = str(action.get("tool") or "")
            tool = self.tools.get(name)
            if tool is None:
                continue
            args = action.get("args") if isinstance(action.get("args"), dict) else {}

            try:
                result = await tool.run(args)
            except HTTPException as e:
                context.append({"tool": name, "error": str(e.detail)})
                steps.append(AgentStep(tool=name, args=args, error=str(e.detail)))
            except (RetrievalError, OSError) as e:
                context.append({"tool": name, "error": str(e)})
                steps.append(AgentStep(tool=name, args=args, error=str(e)))
            else:
                context.append({"tool": name, "result": result})
                steps.append(AgentStep(tool=name, args=args, result=result))

        return STEP_LIMIT_REPLY, steps


async def run_agent(question: str, deps: RagDependencies) -> AgentResponse:
    """Run the agent under the request deadline."""
    cfg = deps.settings
    started = time.perf_counter()

    try:
        async with asyncio.timeout(cfg.request_timeout_seconds):
            reply, steps = await Agent(deps).run(question)
    except TimeoutError as e:
        raise GenerationTimeout(
            f"Request exceeded the {cfg.request_timeout_seconds}s deadline"
        ) from e

    duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info(
        f"agent_request | steps={len(steps)} | tools={[s.tool for s in steps]} | "
        f"q_chars={len(question)} | a_chars={len(reply)} | duration_ms={duration_ms}"
    )
    return AgentResponse(
        reply=reply,
        actions=steps,
        meta=AgentMeta(rid=request_id_ctx.get(), duration_ms=duration_ms, steps=len(steps)),
    )
