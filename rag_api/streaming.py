"""
Server-Sent Events streaming of chat answers.

Events (one JSON object per "data:" line):
    {"meta": {...}}                    first event
    {"delta": "..."}                   answer pieces, split per STREAM_SPLIT
    {"done": true, "full": "...", ...} normal completion
    {"error": "quota_exceeded" | "timeout" | "LLM_error"}

Keep-alive comments (": ping <ms>") are produced by a Heartbeat that lives
exactly as long as the response: it stops on completion, on error and when
the client disconnects.
"""
import asyncio
import contextlib
import json
import re
import time
from typing import AsyncIterator

import sentry_sdk

from rag_api.logging_config import get_logger
from rag_api.models import Message
from retrieval.errors import GenerationTimeout, RateLimited
from retrieval.providers import GenerationProvider

logger = get_logger(__name__)

MAX_TURNS = 15
MAX_TURN_CHARS = 4000

SCOPE_RULES = (
    "If the question is outside the project's scope (DevOps, Linux, Terraform, Proxmox, "
    "monitoring, security), say briefly that it is not covered and steer back to the project."
)

# Role prefixes a user could inject to impersonate the transcript format
_CONTROL_TOKENS = re.compile(r"^\s*(SYSTEM|ASSISTANT|USER)\s*:\s*", re.IGNORECASE | re.MULTILINE)


def sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def strip_control_tokens(text: str) -> str:
    return _CONTROL_TOKENS.sub("", str(text or ""))[:MAX_TURN_CHARS]


def build_chat_prompt(messages: list[Message], system_prompt: str) -> tuple[list[dict], str]:
    """
    Transcript-style prompt from the last MAX_TURNS messages.

    Returns the sanitized turns and the prompt; turns left empty after
    sanitizing are dropped.
    """
    safe = []
    for m in (messages or [])[-MAX_TURNS:]:
        content = strip_control_tokens(m.content)
        if not content.strip():
            continue
        safe.append({"role": "assistant" if m.role == "assistant" else "user", "content": content})

    transcript = "\n".join(f"{t['role'].upper()}: {t['content']}" for t in safe)
    prompt = f"SYSTEM:\n{system_prompt}\n\nRULES:\n{SCOPE_RULES}\n\n{transcript}\nASSISTANT:"
    return safe, prompt


def split_text(text: str, mode: str) -> list[str]:
    """Split a delta into pieces: whole chunk, words (spaces kept) or characters."""
    if mode == "char":
        return list(text)
    if mode == "word":
        return [p for p in re.split(r"(\s+)", text) if p]
    return [text]


class Heartbeat:
    """
    Scoped keep-alive timer.

    While entered, puts an SSE comment on the queue every interval seconds.
    Leaving the context always cancels the timer task. interval <= 0
    disables it.
    """

    def __init__(self, queue: asyncio.Queue, interval: float):
        self.queue = queue
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.queue.put(f": ping {int(time.time() * 1000)}\n\n")

    async def __aenter__(self) -> "Heartbeat":
        if self.interval > 0:
            self._task = asyncio.create_task(self._run())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task


async def _produce(
    queue: asyncio.Queue,
    prompt: str,
    generator: GenerationProvider,
    *,
    rid: str,
    split: str,
    delay_ms: int,
    timeout: float,
) -> None:
    started = time.perf_counter()
    full = ""
    try:
        await queue.put(sse({"meta": {"rid": rid, "split": split, "delay_ms": delay_ms}}))

        async with asyncio.timeout(timeout):
            async for delta in generator.stream(prompt):
                for piece in split_text(delta, split):
                    full += piece
                    await queue.put(sse({"delta": piece}))
                    if split != "chunk" and delay_ms > 0:
                        await asyncio.sleep(delay_ms / 1000)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"stream_done | split={split} | a_chars={len(full)} | duration_ms={duration_ms}")
        await queue.put(sse({"done": True, "full": full, "meta": {"rid": rid, "duration_ms": duration_ms}}))

    except RateLimited as e:
        logger.warning(f"stream_error | error=quota_exceeded | retry_after={e.retry_after}")
        await queue.put(sse({"error": "quota_exceeded", "retry_after_sec": e.retry_after}))
    except (GenerationTimeout, TimeoutError):
        logger.warning(f"stream_error | error=timeout | timeout={timeout}s | a_chars={len(full)}")
        await queue.put(sse({"error": "timeout"}))
    except Exception as e:
        # Headers are already sent: the failure can only be reported in-band
        logger.error(f"stream_error | error=LLM_error | err={type(e).__name__}: {e}")
        sentry_sdk.capture_exception(e)
        await queue.put(sse({"error": "LLM_error"}))
    finally:
        await queue.put(None)


async def stream_answer(
    prompt: str,
    generator: GenerationProvider,
    *,
    rid: str,
    split: str = "chunk",
    delay_ms: int = 0,
    heartbeat_seconds: float = 15.0,
    timeout: float = 45.0,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one streamed answer.

    Closing this generator early (client disconnect) cancels generation and
    stops the heartbeat.
    """
    queue: asyncio.Queue = asyncio.Queue()
    async with Heartbeat(queue, heartbeat_seconds):
        producer = asyncio.create_task(
            _produce(queue, prompt, generator, rid=rid, split=split, delay_ms=delay_ms, timeout=timeout)
        )
        try:
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            if not producer.done():
                logger.info("stream_cancelled | reason=client_disconnected")
                producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer
