"""Data models for the credential pool, conversation sessions and requests."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"

MODE_SINGLE = "single"
MODE_STREAM = "stream"


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def mask_secret(secret: str) -> str:
    if len(secret) <= 11:
        return secret[:3] + "..." if secret else ""
    return f"{secret[:8]}...{secret[-3:]}"


@dataclass
class CredentialRecord:
    """Health and usage state of one credential in the pool."""

    index: int
    secret: str
    healthy: bool = True
    quota_exhausted: bool = False
    error_count: int = 0
    last_used: Optional[datetime] = None
    last_error: Optional[datetime] = None
    last_error_message: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.healthy and not self.quota_exhausted

    def key_prefix(self) -> str:
        return mask_secret(self.secret)

    def to_state(self) -> Dict[str, Any]:
        """Serializable health state. The secret is persisted separately."""
        return {
            "index": self.index,
            "healthy": self.healthy,
            "quota_exhausted": self.quota_exhausted,
            "error_count": self.error_count,
            "last_used": _format_ts(self.last_used),
            "last_error": _format_ts(self.last_error),
            "last_error_message": self.last_error_message,
        }

    @classmethod
    def from_state(cls, secret: str, state: Dict[str, Any]) -> "CredentialRecord":
        return cls(
            index=int(state["index"]),
            secret=secret,
            healthy=bool(state.get("healthy", True)),
            quota_exhausted=bool(state.get("quota_exhausted", False)),
            error_count=int(state.get("error_count", 0)),
            last_used=_parse_ts(state.get("last_used")),
            last_error=_parse_ts(state.get("last_error")),
            last_error_message=state.get("last_error_message"),
        )


@dataclass
class PoolState:
    """Ordered credential records plus the round-robin cursor."""

    records: List[CredentialRecord] = field(default_factory=list)
    cursor: int = 0


@dataclass
class ChatMessage:
    role: str
    text: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role=data["role"],
            text=data["text"],
            timestamp=_parse_ts(data.get("timestamp")) or datetime.now(),
        )


@dataclass
class ConversationSession:
    """Message history of one conversation, bound to one credential."""

    id: str
    bound_credential_index: int
    messages: List[ChatMessage] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    last_updated: datetime = field(default_factory=datetime.now)

    @property
    def last_activity(self) -> datetime:
        if self.messages:
            return self.messages[-1].timestamp
        return self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bound_credential_index": self.bound_credential_index,
            "messages": [message.to_dict() for message in self.messages],
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSession":
        created_at = _parse_ts(data.get("created_at")) or datetime.now()
        return cls(
            id=data["id"],
            bound_credential_index=int(data.get("bound_credential_index", 0)),
            messages=[ChatMessage.from_dict(item) for item in data.get("messages", [])],
            metadata=dict(data.get("metadata") or {}),
            created_at=created_at,
            last_updated=_parse_ts(data.get("last_updated")) or created_at,
        )


@dataclass
class GenerationOptions:
    """Sampling options sent as the provider's ``generationConfig``."""

    temperature: float = 0.7
    top_k: int = 40
    top_p: float = 0.95
    max_output_tokens: int = 2048
    model: Optional[str] = None


@dataclass
class FileReference:
    """A logical file attached to a request.

    ``uri`` is the remote handle issued by the file-resolution service and is
    ``None`` until the reference has been resolved.
    """

    name: str
    mime_type: str
    uri: Optional[str] = None


@dataclass
class Chunk:
    text: str
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None


@dataclass
class GenerationResult:
    text: str
    finish_reason: Optional[str]
    credential_index: int
    usage: Optional[Dict[str, int]] = None


class RequestState(str, Enum):
    BUILT = "built"
    SENT = "sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    RequestState.BUILT: {RequestState.SENT},
    RequestState.SENT: {
        RequestState.STREAMING,
        RequestState.COMPLETED,
        RequestState.FAILED,
        RequestState.CANCELLED,
    },
    RequestState.STREAMING: {
        RequestState.COMPLETED,
        RequestState.FAILED,
        RequestState.CANCELLED,
    },
    RequestState.COMPLETED: set(),
    RequestState.FAILED: set(),
    RequestState.CANCELLED: set(),
}


@dataclass
class PendingRequest:
    """One attempt against the provider. Never persisted."""

    payload: Dict[str, Any]
    credential_index: int
    mode: str = MODE_SINGLE
    state: RequestState = RequestState.BUILT

    def advance(self, state: RequestState) -> None:
        if state == RequestState.STREAMING and self.mode != MODE_STREAM:
            raise ValueError("Only streaming requests enter the streaming state")
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid request transition {self.state.value} -> {state.value}"
            )
        self.state = state

    @property
    def finished(self) -> bool:
        return not _TRANSITIONS[self.state]
