"""Content, identity and data-block helpers for host message payloads.

Host payloads are loosely shaped: a dict with one of several content keys,
sometimes wrapped in a nested ``data`` object, sometimes a bare Message.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

from panelsync.types import Message
from panelsync.utils import now_ms, short_hash

CONTENT_FIELDS = ("mes", "message", "content", "text")
IDENTITY_FIELDS = ("id", "messageId", "msg_id", "index", "mesid")
AUTHOR_FIELDS = ("is_user", "isUser")
TIMESTAMP_FIELDS = ("send_date", "timestamp")


@lru_cache(maxsize=16)
def compile_block_pattern(tag: str) -> re.Pattern[str]:
    """Pattern matching the first complete ``<tag>...</tag>`` block."""
    escaped = re.escape(tag)
    return re.compile(rf"<{escaped}>([\s\S]*?)</{escaped}>")


def has_complete_block(content: str | None, tag: str) -> bool:
    """True only when an opening tag is followed by its closing tag."""
    if not content:
        return False
    return compile_block_pattern(tag).search(content) is not None


def extract_block(content: str, tag: str) -> str | None:
    """Inner text of the first complete block, stripped. None if absent."""
    match = compile_block_pattern(tag).search(content)
    if match is None:
        return None
    return match.group(1).strip()


def _first_str(data: Mapping[str, Any], fields: tuple[str, ...]) -> str | None:
    for name in fields:
        value = data.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_content(data: Any) -> str | None:
    """Find message text in a host payload.

    Tries the known content keys at the top level, then inside a nested
    ``data`` mapping.
    """
    if isinstance(data, Message):
        return data.content or None
    if isinstance(data, str):
        return data or None
    if not isinstance(data, Mapping):
        return None
    content = _first_str(data, CONTENT_FIELDS)
    if content is not None:
        return content
    nested = data.get("data")
    if isinstance(nested, Mapping):
        return _first_str(nested, CONTENT_FIELDS)
    return None


def has_identity(data: Mapping[str, Any]) -> bool:
    """True when the payload names its own identity."""
    return any(
        data.get(name) not in (None, "") and not isinstance(data.get(name), bool)
        for name in IDENTITY_FIELDS
    )


def extract_identity(data: Any, content: str, *, index: int | None = None) -> str:
    """Stable identity for a message payload.

    Falls back to the host index, then to a fingerprint built from the
    message timestamp (or the current time) and a content hash.
    """
    stamp: Any = None
    if isinstance(data, Message):
        if data.identity:
            return data.identity
        if data.index is not None:
            return str(data.index)
    elif isinstance(data, Mapping):
        for name in IDENTITY_FIELDS:
            value = data.get(name)
            if value is None or value == "" or isinstance(value, bool):
                continue
            return str(value)
        stamp = next((data[f] for f in TIMESTAMP_FIELDS if data.get(f)), None)
    if index is not None:
        return str(index)
    if stamp is None:
        stamp = now_ms()
    return f"msg_{stamp}_{short_hash(content)}"


def is_user_message(data: Any) -> bool | None:
    """Author flag of a message payload; None when the payload doesn't say."""
    if isinstance(data, Message):
        return not data.is_host_authored
    if isinstance(data, Mapping):
        for name in AUTHOR_FIELDS:
            value = data.get(name)
            if isinstance(value, bool):
                return value
    return None


def normalize_message(data: Any, *, index: int | None = None) -> Message | None:
    """Build a Message from a host payload, or None if it carries no text."""
    if isinstance(data, Message):
        return data
    content = extract_content(data)
    if content is None:
        return None
    is_user = is_user_message(data)
    return Message(
        identity=extract_identity(data, content, index=index),
        content=content,
        is_host_authored=not is_user if is_user is not None else True,
        index=index,
        raw=data,
    )
