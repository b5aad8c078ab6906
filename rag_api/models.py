from typing import Any

from pydantic import BaseModel, Field


class Message(BaseModel):
    """A single turn in the conversation."""
    role: str  # "user" or "assistant"
    content: str = ""


class AskRequest(BaseModel):
    messages: list[Message] = Field(default_factory=list)


class EvidenceOut(BaseModel):
    source: str  # basename only
    score: float
    preview: str


class AskMeta(BaseModel):
    rid: str
    duration_ms: int
    sources: list[str] = Field(default_factory=list)  # sources of the assembled context
    evidence: list[EvidenceOut] = Field(default_factory=list)  # all retrieved hits
    arbiter: str | None = None


class Action(BaseModel):
    """Client-side follow-up offered with an answer."""
    id: str
    type: str  # "show_file" | "propose_fix" | "ask_followup"
    label: str
    payload: dict = Field(default_factory=dict)


class AskResponse(BaseModel):
    reply: str
    accepted: bool = True  # False when the arbiter replaced the draft
    meta: AskMeta
    actions: list[Action] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str  # stable identifier, see ErrorKind
    message: str
    rid: str
    duration_ms: int
    details: dict = Field(default_factory=dict)


class KbFileResponse(BaseModel):
    source: str
    size: int
    truncated: bool
    content: str


class ChatMeta(BaseModel):
    rid: str
    duration_ms: int


class ChatResponse(BaseModel):
    """Plain chat answer (/ask): no retrieval, no citations."""
    reply: str
    meta: ChatMeta


class AgentRequest(BaseModel):
    question: str | None = None
    messages: list[Message] = Field(default_factory=list)


class AgentStep(BaseModel):
    """One tool call made by the agent, with its result or error."""
    tool: str
    args: dict = Field(default_factory=dict)
    result: Any = None
    error: str | None = None


class AgentMeta(BaseModel):
    rid: str
    duration_ms: int
    steps: int


class AgentResponse(BaseModel):
    reply: str
    actions: list[AgentStep] = Field(default_factory=list)
    meta: AgentMeta
