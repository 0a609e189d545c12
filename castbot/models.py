"""
Pydantic models for sessions, cursor tokens, normalized content and outcomes.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

# Telegram rejects callback_data longer than this
MAX_PAYLOAD_BYTES = 64


class SignerState(str, Enum):
    NONE = "none"
    GENERATED = "generated"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REVOKED = "revoked"


class Session(BaseModel):
    """Per-chat-identity state; ``signer_state`` caches the remote signer status."""
    session_id: str
    chat_id: int
    fid: int = 0
    signer_id: Optional[str] = None
    signer_state: SignerState = SignerState.NONE
    approval_url: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.signer_id is not None and self.signer_state == SignerState.APPROVED


class SignerRecord(BaseModel):
    """Signer as reported by the remote service."""
    signer_id: str
    public_key: str = ""
    status: str = "generated"
    approval_url: Optional[str] = None
    fid: Optional[int] = None

    @classmethod
    def from_api(cls, data: dict) -> "SignerRecord":
        return cls(
            signer_id=data.get("signer_uuid"),
            public_key=data.get("public_key") or "",
            status=data.get("status") or "generated",
            approval_url=data.get("signer_approval_url"),
            fid=data.get("fid"),
        )


class PageKind(str, Enum):
    FEED = "feed"
    NOTIFICATIONS = "notifications"


class PageContext(BaseModel):
    """Everything needed to replay a paginated query."""
    kind: PageKind
    subject_fid: int
    types: List[str] = Field(default_factory=list)


class CursorToken(BaseModel):
    short_id: str
    opaque_cursor: str
    context: PageContext
    expires_at: float


class Author(BaseModel):
    fid: int = 0
    username: str = ""
    display_name: str = ""

    @property
    def name(self) -> str:
        return self.display_name or self.username or f"fid:{self.fid}"


class MediaRef(BaseModel):
    url: str
    kind: Literal["image", "video", "link"] = "link"


class CastItem(BaseModel):
    kind: Literal["cast"] = "cast"
    hash: str
    author: Author = Field(default_factory=Author)
    text: str = ""
    timestamp: Optional[datetime] = None
    media: List[MediaRef] = Field(default_factory=list)
    likes: int = 0
    recasts: int = 0
    replies: int = 0
    parent_hash: Optional[str] = None
    channel: Optional[str] = None


class NotificationItem(BaseModel):
    kind: Literal["notification"] = "notification"
    type: str
    timestamp: Optional[datetime] = None
    actors: List[Author] = Field(default_factory=list)
    cast: Optional[CastItem] = None


NormalizedItem = Annotated[Union[CastItem, NotificationItem], Field(discriminator="kind")]


class Page(BaseModel):
    items: List[NormalizedItem] = Field(default_factory=list)
    next_token: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return not self.items and self.next_token is None


class FailureKind(str, Enum):
    AUTHORIZATION = "authorization"
    REMOTE_UNAVAILABLE = "remote_unavailable"
    STALE_TOKEN = "stale_token"
    LIFECYCLE = "lifecycle"
    UNEXPECTED = "unexpected"


class SignerOutcome(BaseModel):
    session: Optional[Session] = None
    approval_url: Optional[str] = None
    failure: Optional[FailureKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def state(self) -> SignerState:
        return self.session.signer_state if self.session else SignerState.NONE


class ActionOutcome(BaseModel):
    action: str
    failure: Optional[FailureKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None


class ButtonAction(str, Enum):
    LIKE = "like"
    RECAST = "recast"
    REPLY = "reply"
    LOAD_MORE = "load_more"
    NOTIF = "notif"


class Button(BaseModel):
    label: str
    payload: str

    @field_validator("payload")
    @classmethod
    def payload_fits(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PAYLOAD_BYTES:
            raise ValueError(f"button payload exceeds {MAX_PAYLOAD_BYTES} bytes")
        return value

    @classmethod
    def for_action(cls, label: str, action: ButtonAction, token: str) -> "Button":
        return cls(label=label, payload=f"{action.value}:{token}")


class PublishedCast(BaseModel):
    hash: str
    text: str
    timestamp: float
    channel_id: Optional[str] = None
