"""Text normalization shared by dedup keys, matching and notifications."""

import html
import re
from typing import Any, Mapping

_WS_RE = re.compile(r"\s+")
_KEY_SEP_RE = re.compile(r"[,|]")
_NON_WORD_RE = re.compile(r"[^\w ]+", re.UNICODE)
_DIGITS_RE = re.compile(r"\D")

BLANK_MARKERS = ("", "---")


def norm(value: Any) -> str:
    """Case-fold and collapse whitespace."""
    return _WS_RE.sub(" ", str(value or "")).strip().casefold()


def norm_key_part(value: Any) -> str:
    """Like norm() but also treats commas and pipes as spaces, so they can
    separate key parts without ambiguity."""
    return norm(_KEY_SEP_RE.sub(" ", str(value or "")))


def norm_title(value: Any) -> str:
    """Title form used for keyword matching: punctuation stripped."""
    cleaned = _NON_WORD_RE.sub("", _WS_RE.sub(" ", str(value or "")).casefold())
    return cleaned.replace("_", "").strip()


def last10(value: Any) -> str:
    """Last ten digits of a phone number."""
    return _DIGITS_RE.sub("", str(value or ""))[-10:]


def is_blank(value: Any) -> bool:
    return str(value if value is not None else "").strip() in BLANK_MARKERS


def compose_location(item: Mapping[str, Any]) -> str:
    """"City, State" when either is present, else the fallback location."""
    city = str(item.get("city") or "").strip()
    state = str(item.get("state") or "").strip()
    if city or state:
        return ", ".join(part for part in (city, state) if part)
    return str(item.get("location") or "").strip()


def esc(value: Any) -> str:
    return html.escape(str(value or ""), quote=True)
