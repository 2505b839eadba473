"""Share-link codec for exporting and importing a ledger snapshot.

A token is the compact JSON document ``{"members": [...], "history": [...]}``
encoded as URL-safe base64 without padding. Importing is a destructive
replace of roster and history; it never touches the active mission.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import Member, PenaltyRecord

logger = logging.getLogger(__name__)

SYNC_QUERY_PARAM = "sync"
DEFAULT_HISTORY_LIMIT = 5


class DecodeError(ValueError):
    """Raised when a sync token is not valid transport encoding or payload."""


@dataclass
class SyncSnapshot:
    members: List[Member] = field(default_factory=list)
    history: List[PenaltyRecord] = field(default_factory=list)


@dataclass
class SyncOutcome:
    """Result of looking at an inbound link.

    ``cleaned_url`` never carries the sync parameter. ``snapshot`` is set when
    a token decoded; ``accepted`` only when the user confirmed replacing
    local data with it.
    """

    cleaned_url: str
    found: bool = False
    snapshot: Optional[SyncSnapshot] = None
    accepted: bool = False
    error: Optional[str] = None


def encode(
    members: Sequence[Member],
    history: Sequence[PenaltyRecord],
    history_limit: int = DEFAULT_HISTORY_LIMIT,
) -> str:
    payload = {
        "members": [member.to_dict() for member in members],
        "history": [record.to_dict() for record in list(history)[: max(0, history_limit)]],
    }
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(token: str) -> bytes:
    # "+" from standard base64 arrives as a space once a query string is parsed.
    cleaned = token.strip().replace(" ", "-").replace("+", "-").replace("/", "_").rstrip("=")
    if not cleaned:
        raise DecodeError("Empty sync token")
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid transport encoding: {exc}") from exc


def decode(token: str) -> SyncSnapshot:
    if not isinstance(token, str):
        raise DecodeError("Sync token must be text")
    raw = _b64decode(token)
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (RecursionError, UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"Invalid payload: {exc}") from exc

    if not isinstance(payload, dict):
        raise DecodeError("Payload must be an object")
    members_raw = payload.get("members")
    history_raw = payload.get("history") or []
    if not isinstance(members_raw, list) or not isinstance(history_raw, list):
        raise DecodeError("members and history must be lists")

    try:
        members = [Member.from_dict(item) for item in members_raw]
        history = [PenaltyRecord.from_dict(item) for item in history_raw]
    except (AttributeError, KeyError, OverflowError, TypeError, ValueError) as exc:
        raise DecodeError(f"Invalid payload entry: {exc!r}") from exc

    ids = [member.id for member in members]
    if len(ids) != len(set(ids)):
        raise DecodeError("Duplicate member ids in payload")
    return SyncSnapshot(members=members, history=history)


def build_share_link(base_url: str, token: str, *, param: str = SYNC_QUERY_PARAM) -> str:
    """``<origin-and-path>?sync=<token>``; any existing query or fragment is dropped."""

    parts = urlsplit(base_url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode({param: token}), ""))


def strip_sync_param(url: str, *, param: str = SYNC_QUERY_PARAM) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != param]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def consume_share_link(
    url: str,
    confirm: Callable[[SyncSnapshot], bool],
    *,
    param: str = SYNC_QUERY_PARAM,
) -> SyncOutcome:
    """Decode the token carried by ``url`` and ask ``confirm`` before use.

    Never raises for a bad token; the caller leaves local state untouched
    unless ``accepted`` is true.
    """

    values = [v for k, v in parse_qsl(urlsplit(url).query, keep_blank_values=True) if k == param]
    cleaned = strip_sync_param(url, param=param)
    if not values:
        return SyncOutcome(cleaned_url=cleaned)

    try:
        snapshot = decode(values[0])
    except DecodeError as exc:
        logger.warning("Ignoring malformed sync token: %s", exc)
        return SyncOutcome(cleaned_url=cleaned, found=True, error=str(exc))

    accepted = bool(confirm(snapshot))
    if not accepted:
        logger.info("Sync import of %d members declined", len(snapshot.members))
    return SyncOutcome(cleaned_url=cleaned, found=True, snapshot=snapshot, accepted=accepted)


__all__ = [
    "DEFAULT_HISTORY_LIMIT",
    "DecodeError",
    "SYNC_QUERY_PARAM",
    "SyncOutcome",
    "SyncSnapshot",
    "build_share_link",
    "consume_share_link",
    "decode",
    "encode",
    "strip_sync_param",
]
