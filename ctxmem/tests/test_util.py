"""Tests for shared utilities."""

from __future__ import annotations

from pathlib import Path

import pytest

from ctxmem.util import (
    append_jsonl,
    backoff_delay_ms,
    iter_jsonl,
    keyword_relevance,
    new_ulid,
    retry_transient,
    safe_segment,
)


class Flaky:
    def __init__(self, failures: int, exc: type[Exception] = ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


def test_retry_transient_recovers() -> None:
    sleeps: list[float] = []
    func = Flaky(2)

    assert retry_transient(func, retryable=(ConnectionError,), attempts=3, sleep=sleeps.append) == "ok"
    assert func.calls == 3
    assert len(sleeps) == 2
    assert all(0 <= s <= 2.0 for s in sleeps)


def test_retry_transient_gives_up_after_attempts() -> None:
    func = Flaky(5)
    with pytest.raises(ConnectionError, match="failure 3"):
        retry_transient(func, retryable=(ConnectionError,), attempts=3, sleep=lambda _: None)
    assert func.calls == 3


def test_retry_transient_does_not_retry_other_errors() -> None:
    func = Flaky(1, exc=KeyError)
    with pytest.raises(KeyError):
        retry_transient(func, retryable=(ConnectionError,), sleep=lambda _: None)
    assert func.calls == 1


def test_backoff_is_bounded() -> None:
    for attempt in range(10):
        delay = backoff_delay_ms(attempt, 100, 2000)
        assert 0 <= delay <= min(2000, 100 * 2 ** attempt)


def test_new_ulid() -> None:
    ulid = new_ulid()
    assert len(ulid) == 26
    assert set(ulid) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")
    assert new_ulid(timestamp_ms=1)[:10] < new_ulid(timestamp_ms=2)[:10]
    with pytest.raises(ValueError):
        new_ulid(timestamp_ms=-1)


@pytest.mark.parametrize("name", ["", ".", "..", "a/b", "a\\b"])
def test_safe_segment_rejects(name: str) -> None:
    with pytest.raises(ValueError):
        safe_segment(name)


def test_safe_segment_accepts() -> None:
    assert safe_segment("alice") == "alice"


def test_keyword_relevance() -> None:
    assert keyword_relevance("", "anything") == 0.0
    assert keyword_relevance("sms email", "We chose SMS") == 0.5
    assert keyword_relevance("chose sms", "We chose SMS") == 1.0
    assert keyword_relevance("kubernetes", "We chose SMS") == 0.0


def test_iter_jsonl_raises_on_corrupt_middle_line(tmp_path: Path) -> None:
    path = tmp_path / "rows.jsonl"
    append_jsonl(path, [{"n": 1}])
    with path.open("a", encoding="utf-8") as f:
        f.write("{not json\n")
    append_jsonl(path, [{"n": 2}])

    with pytest.raises(ValueError):
        list(iter_jsonl(path))
    assert list(iter_jsonl(tmp_path / "missing.jsonl")) == []
