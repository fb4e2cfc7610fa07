"""
Pydantic Schemas - Data Validation Models

Defines the schemas that cross component boundaries:
- Items returned by the page adapter
- Lead records read from the message centre
- Persisted scheduler state
- Redis Pub/Sub messages (notifications out, commands in)
- Lock screen credentials

Usage:
    from utils.schemas import PageItem

    item = PageItem(**raw_item)
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_CREDENTIAL_LENGTH = 256


class PageItem(BaseModel):
    """One listing row extracted from the leads page."""

    index: int = Field(..., ge=1, description="1-based row position on the page")
    title: str = Field(..., description="Listing title")
    city: str = Field(default="")
    state: str = Field(default="")
    location: str = Field(default="", description="Fallback location text")
    serial: Optional[str] = Field(default=None, description="Portal-side id, if exposed")

    @field_validator("title", "city", "state", "location", mode="before")
    @classmethod
    def strip_text(cls, v: Any) -> str:
        return str(v or "").strip()


class LeadRecord(BaseModel):
    """Contact details of a lead; blank fields may be filled in later."""

    product: str = Field(default="")
    buyer: str = Field(default="")
    mobile: str = Field(default="")
    email: str = Field(default="")
    company: str = Field(default="")
    gstin: str = Field(default="")
    address: str = Field(default="")
    time: str = Field(default="")

    @field_validator("*", mode="before")
    @classmethod
    def clean(cls, v: Any) -> str:
        text = " ".join(str(v or "").split())
        return "" if text == "---" else text


class CycleState(BaseModel):
    """Persisted collection scheduler state (restart continuity)."""

    enabled: bool = False
    interval_ms: int = 7000
    last_start_at: float = 0.0
    last_stop_at: float = 0.0
    last_cycle_at: float = 0.0
    cycle_count: int = 0


class NotificationEvent(BaseModel):
    """Outbound notification published for the chat-bot bridge.

    {
        "type": "notification",
        "text": "<b>Keyword Matched</b> ...",
        "metadata": {"parse_mode": "HTML"},
        "ts": "2025-01-15T03:15:02+00:00"
    }
    """

    type: Literal["notification"] = "notification"
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


CommandName = Literal[
    "status",
    "start",
    "stop",
    "runreports",
    "reset",
    "cleanall",
    "keywords",
    "addkeyword",
    "delkeyword",
    "products",
    "addproduct",
    "delproduct",
]


class CommandEvent(BaseModel):
    """Inbound command from the chat-bot bridge or UI."""

    command: CommandName
    args: dict[str, Any] = Field(default_factory=dict)
    ts: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def split_text(cls, data: Any) -> Any:
        """Accept chat style input: {"command": "/start 10"}."""
        if isinstance(data, dict):
            head, _, rest = str(data.get("command") or "").strip().partition(" ")
            args = dict(data["args"]) if isinstance(data.get("args"), dict) else {}
            if rest.strip():
                args.setdefault("text", rest.strip())
            data = {**data, "command": head.lstrip("/").lower(), "args": args}
        return data

    @property
    def text(self) -> str:
        return str(self.args.get("text") or "").strip()


class Credentials(BaseModel):
    """Lock screen credentials, length-capped before comparison."""

    user: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=1)

    @field_validator("user", "secret", mode="before")
    @classmethod
    def cap_length(cls, v: Any) -> str:
        if not isinstance(v, str):
            raise ValueError("must be a string")
        return v[:MAX_CREDENTIAL_LENGTH]
