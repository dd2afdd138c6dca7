"""
Small utilities shared by the stores.

ULIDs, UTC timestamps, JSON Lines helpers and bounded retry for transient
failures.
"""

from __future__ import annotations

import json
import logging
import os
import random
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _encode_crockford_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(_CROCKFORD32[value & 31])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(*, timestamp_ms: int | None = None) -> str:
    """
    Generate a ULID (26 chars, Crockford base32).

    ULID = 48-bit millisecond timestamp + 80-bit randomness.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)

    if not (0 <= timestamp_ms < (1 << 48)):
        raise ValueError("timestamp_ms out of range for ULID")

    randomness = int.from_bytes(os.urandom(10), "big")
    value = (timestamp_ms << 80) | randomness
    return _encode_crockford_base32(value, 26)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# -----------------------------------------------------------------------------
# JSON Lines
# -----------------------------------------------------------------------------


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """
    Iterate over JSON objects in a JSON Lines file.

    A trailing line that does not parse is a write torn by a crash and is
    skipped. A malformed line anywhere else is corruption and raises.
    """
    if not path.exists():
        return

    with path.open("r", encoding="utf-8") as f:
        lines = f.readlines()

    for idx, line in enumerate(lines):
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            if idx == len(lines) - 1:
                logger.warning("Ignoring torn trailing line in %s", path)
                return
            raise


def repair_tail(path: Path) -> None:
    """Truncate a torn trailing line so the next append starts on a fresh line."""
    if not path.exists():
        return
    data = path.read_bytes()
    if not data or data.endswith(b"\n"):
        return
    cut = data.rfind(b"\n") + 1
    with path.open("r+b") as f:
        f.truncate(cut)
    logger.warning("Truncated torn trailing line in %s (%d bytes)", path, len(data) - cut)


def append_jsonl(path: Path, rows: list[dict[str, Any]]) -> None:
    """Append rows in a single write, flushed to disk before returning."""
    if not rows:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = "".join(json.dumps(row, separators=(",", ":")) + "\n" for row in rows)
    with path.open("a", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        os.fsync(f.fileno())


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write JSON atomically (write to temp, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    temp_path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    os.replace(temp_path, path)


# -----------------------------------------------------------------------------
# Bounded retry
# -----------------------------------------------------------------------------


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> float:
    """Exponential backoff with full jitter: random(0, min(max, base * 2^attempt))."""
    ceiling = min(max_delay_ms, base_delay_ms * (2 ** attempt))
    return random.uniform(0, ceiling)


def retry_transient(
    func: Callable[[], T],
    *,
    retryable: tuple[type[BaseException], ...],
    attempts: int = 3,
    base_delay_ms: int = 100,
    max_delay_ms: int = 2000,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call func, retrying retryable exceptions with bounded exponential backoff.

    Args:
        func: Zero-argument callable
        retryable: Exception types treated as transient
        attempts: Total attempts (>= 1)
        base_delay_ms: First backoff ceiling
        max_delay_ms: Backoff ceiling cap
        sleep: Sleep function (injected by tests)

    Returns:
        func's return value

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return func()
        except retryable as e:
            if attempt == attempts - 1:
                raise
            delay = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            logger.debug("Attempt %d failed (%s); retrying in %.0fms", attempt + 1, e, delay)
            sleep(delay / 1000.0)
    raise AssertionError("unreachable")


# -----------------------------------------------------------------------------
# Paths and scoring
# -----------------------------------------------------------------------------

_WORD = re.compile(r"\w+")


def safe_segment(name: str) -> str:
    """Validate an identifier used as a single path segment."""
    if not name or name in {".", ".."} or "/" in name or "\\" in name:
        raise ValueError(f"invalid identifier for storage path: {name!r}")
    return name


def keyword_relevance(query: str, content: str) -> float:
    """
    Keyword-overlap relevance in [0, 1].

    Fraction of query words present in content, boosted when the whole query
    appears as a substring.
    """
    query_lower = query.lower().strip()
    content_lower = content.lower()
    query_words = set(_WORD.findall(query_lower))
    if not query_words:
        return 0.0

    content_words = set(_WORD.findall(content_lower))
    score = len(query_words & content_words) / len(query_words)
    if query_lower in content_lower:
        score += 0.3
    return min(score, 1.0)
