"""
Pydantic models for the HTTP endpoints and the control-channel wire protocol.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Control channel (client → backend)
# ============================================================================

class ConversationItem(BaseModel):
    """Synthetic conversation item injected by the client."""
    type: Literal["message"] = "message"
    role: Literal["user", "assistant", "system"]
    content: str


class ConversationItemCreate(BaseModel):
    """
    Adds an item to the backend conversation. Used for the greeting
    trigger (role=user) and for retrieved context (role=assistant).
    """
    type: Literal["conversation.item.create"] = "conversation.item.create"
    item: ConversationItem


class SessionUpdate(BaseModel):
    """Replaces session-level configuration such as instructions."""
    type: Literal["session.update"] = "session.update"
    session: dict = Field(default_factory=dict)


# ============================================================================
# ICE servers
# ============================================================================

class IceServer(BaseModel):
    """STUN/TURN server descriptor, as consumed by RTCIceServer."""
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class IceServersResponse(BaseModel):
    ice_servers: List[IceServer] = Field(default_factory=list)


DEFAULT_ICE_SERVERS: List[IceServer] = [
    IceServer(urls="stun:stun.l.google.com:19302"),
    IceServer(urls="stun:stun1.l.google.com:19302"),
    IceServer(
        urls="turn:openrelay.metered.ca:80",
        username="openrelayproject",
        credential="openrelayproject",
    ),
    IceServer(
        urls="turn:openrelay.metered.ca:443",
        username="openrelayproject",
        credential="openrelayproject",
    ),
    IceServer(
        urls="turn:openrelay.metered.ca:443?transport=tcp",
        username="openrelayproject",
        credential="openrelayproject",
    ),
]

CLIENT_FALLBACK_ICE_SERVERS: List[IceServer] = [IceServer(urls="stun:stun.l.google.com:19302")]


# ============================================================================
# Transport negotiation
# ============================================================================

class OfferRequest(BaseModel):
    """Local SDP offer plus the session instructions to start with."""
    sdp: str = Field(..., description="SDP offer generated by the client")
    instructions: Optional[str] = Field(
        default=None,
        description="System prompt, optionally followed by prior conversation context"
    )
    voice: Optional[str] = None
    category: Optional[str] = None
    question: Optional[str] = None

    @field_validator("sdp")
    @classmethod
    def validate_sdp(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("SDP offer is required")
        return v


class ErrorResponse(BaseModel):
    """Failure body: human-readable error plus classification hints."""
    error: str
    code: Optional[str] = None
    details: Optional[str] = None
    suggestion: Optional[str] = None


class EphemeralKeyResponse(BaseModel):
    token: str


# ============================================================================
# Context retrieval
# ============================================================================

class ContextRequest(BaseModel):
    question: str = ""
    category: Optional[str] = None
    session_id: Optional[str] = None
    match_count: int = Field(default=3, ge=1, le=20)


class ContextResponse(BaseModel):
    """
    Result of a context lookup.

    context is None when nothing passed the relevance gate; instructions is
    always present so the caller can send it verbatim.
    """
    context: Optional[str] = None
    instructions: str = ""
    chunks_found: int = 0
    top_similarity: Optional[float] = None
    error: Optional[str] = None

    @property
    def has_context(self) -> bool:
        return self.chunks_found > 0 and bool(self.context)


# ============================================================================
# Conversation persistence
# ============================================================================

class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QuestionAnswer(BaseModel):
    question: str
    answer: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SaveConversationRequest(BaseModel):
    """
    Full snapshot of a session transcript. Resubmitting the same session_id
    replaces what was stored before.
    """
    session_id: str = Field(..., min_length=1)
    messages: List[ConversationMessage] = Field(default_factory=list)
    exchanges: List[QuestionAnswer] = Field(default_factory=list)
    source: str = "voice"
    variant: Optional[str] = None


class SaveConversationResponse(BaseModel):
    session_id: str
    stored_messages: int
    stored_exchanges: int


def parse_ice_servers(payload) -> List[IceServer]:
    """
    Accept the shapes ICE endpoints return: a bare list, or an object with
    `ice_servers` / `iceServers`. Malformed entries are skipped.
    """
    if isinstance(payload, dict):
        payload = payload.get("ice_servers") or payload.get("iceServers") or []
    if not isinstance(payload, list):
        return []

    servers = []
    for entry in payload:
        if isinstance(entry, dict) and entry.get("urls"):
            servers.append(IceServer(**{k: entry.get(k) for k in ("urls", "username", "credential")}))
    return servers
