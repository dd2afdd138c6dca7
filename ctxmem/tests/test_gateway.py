"""Tests for the long-term memory gateways."""

from __future__ import annotations

import io
import json
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError

import pytest

from ctxmem.config import Config, GatewayConfig
from ctxmem.errors import GatewayError, GatewayUnavailable
from ctxmem.memory import http as http_mod
from ctxmem.memory.gateway import (
    LocalMemoryGateway,
    MemoryRecord,
    build_gateway,
    namespace_for,
    split_namespace,
)
from ctxmem.memory.http import HttpGatewayConfig, HttpMemoryGateway


def test_namespace_helpers() -> None:
    assert namespace_for("alice", "preferences") == "alice/preferences"
    assert split_namespace("alice/project-facts") == ("alice", "project-facts")
    for bad in ("alice", "alice/", "a/b/c", "../x"):
        with pytest.raises(ValueError):
            split_namespace(bad)


def test_local_store_returns_outcome_per_record(local_gateway: LocalMemoryGateway) -> None:
    outcomes = local_gateway.store([
        MemoryRecord(namespace="alice/project-facts", text="Use Postgres"),
        MemoryRecord(namespace="alice/project-facts", text="   "),
        MemoryRecord(namespace="not-a-namespace", text="x"),
    ])

    assert [o.ok for o in outcomes] == [True, False, False]
    assert outcomes[1].error_code == "empty_text"
    assert outcomes[2].error_code == "invalid_namespace"
    assert local_gateway.count("alice/project-facts") == 1


def test_local_store_deduplicates_by_source_key(local_gateway: LocalMemoryGateway) -> None:
    record = MemoryRecord(namespace="alice/project-facts", text="Mobile-first", source_key="s1#1")
    first = local_gateway.store([record])[0]
    second = local_gateway.store([record])[0]

    assert first.external_id == second.external_id
    assert local_gateway.count("alice/project-facts") == 1


def test_local_retrieve_ranks_by_relevance(local_gateway: LocalMemoryGateway) -> None:
    local_gateway.store([
        MemoryRecord(namespace="alice/preferences", text="Prefers concise answers"),
        MemoryRecord(namespace="alice/preferences", text="Prefers Python for backend services"),
        MemoryRecord(namespace="alice/preferences", text="Works in UTC+1"),
        MemoryRecord(namespace="bob/preferences", text="Prefers Python too"),
    ])

    hits = local_gateway.retrieve("alice/preferences", "python backend")
    assert [h.text for h in hits] == ["Prefers Python for backend services"]
    assert hits[0].relevance_score == 1.0

    everything = local_gateway.retrieve("alice/preferences", "", top_k=2)
    assert len(everything) == 2
    assert local_gateway.retrieve("alice/preferences", "python", top_k=0) == []
    assert local_gateway.retrieve("carol/preferences", "python") == []


def test_retrieved_record_dict_shape(local_gateway: LocalMemoryGateway) -> None:
    local_gateway.store([MemoryRecord(namespace="alice/project-facts", text="Use SMS", metadata={"k": 1})])
    data = local_gateway.retrieve("alice/project-facts", "sms")[0].to_dict()
    assert set(data) == {"record", "relevance_score"}
    assert data["record"]["text"] == "Use SMS"
    assert data["record"]["metadata"] == {"k": 1}


def test_build_gateway_picks_backend(tmp_path: Path) -> None:
    assert isinstance(build_gateway(Config(data_dir=tmp_path)), LocalMemoryGateway)
    http_cfg = Config(data_dir=tmp_path, gateway=GatewayConfig(kind="http", url="http://memory.test"))
    assert isinstance(build_gateway(http_cfg), HttpMemoryGateway)


# -----------------------------------------------------------------------------
# HTTP client
# -----------------------------------------------------------------------------


class _Response(io.BytesIO):
    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class _FakeUrlopen:
    """Scripted replacement for urlopen that records requests."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: list[Any] = []

    def __call__(self, req: Any, timeout: float | None = None) -> _Response:
        self.requests.append(req)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return _Response(json.dumps(item).encode("utf-8"))


def _http_error(code: int) -> HTTPError:
    return HTTPError("http://memory.test", code, "boom", hdrs=None, fp=None)


@pytest.fixture
def http_gateway() -> HttpMemoryGateway:
    return HttpMemoryGateway(
        HttpGatewayConfig(base_url="http://memory.test/", token="secret", retry_base_delay_ms=1, retry_max_delay_ms=2)
    )


def test_http_store_maps_per_record_results(monkeypatch: pytest.MonkeyPatch, http_gateway: HttpMemoryGateway) -> None:
    fake = _FakeUrlopen({"results": [{"ok": True, "id": "m1"}, {"ok": False, "error": "too_long"}]})
    monkeypatch.setattr(http_mod, "urlopen", fake)

    outcomes = http_gateway.store([
        MemoryRecord(namespace="alice/project-facts", text="a"),
        MemoryRecord(namespace="alice/project-facts", text="b"),
    ])

    assert outcomes[0].external_id == "m1"
    assert outcomes[1].error_code == "too_long"
    req = fake.requests[0]
    assert req.full_url == "http://memory.test/v1/records"
    assert req.get_header("Authorization") == "Bearer secret"
    assert len(json.loads(req.data)["records"]) == 2


def test_http_retrieve_quotes_namespace_and_sorts(
    monkeypatch: pytest.MonkeyPatch, http_gateway: HttpMemoryGateway
) -> None:
    fake = _FakeUrlopen({"results": [
        {"id": "m1", "text": "low", "score": 0.2},
        {"id": "m2", "text": "high", "score": 0.9, "metadata": {"k": "v"}},
    ]})
    monkeypatch.setattr(http_mod, "urlopen", fake)

    hits = http_gateway.retrieve("alice/preferences", "anything", top_k=1)

    assert [h.record_id for h in hits] == ["m2"]
    assert fake.requests[0].full_url == "http://memory.test/v1/namespaces/alice%2Fpreferences/search"
    assert json.loads(fake.requests[0].data) == {"query": "anything", "top_k": 1}


def test_http_retries_transient_errors(monkeypatch: pytest.MonkeyPatch, http_gateway: HttpMemoryGateway) -> None:
    fake = _FakeUrlopen(_http_error(503), URLError("refused"), {"results": [{"ok": True, "id": "m1"}]})
    monkeypatch.setattr(http_mod, "urlopen", fake)

    outcomes = http_gateway.store([MemoryRecord(namespace="alice/project-facts", text="a")])
    assert outcomes[0].ok
    assert len(fake.requests) == 3


def test_http_gives_up_after_bounded_attempts(
    monkeypatch: pytest.MonkeyPatch, http_gateway: HttpMemoryGateway
) -> None:
    fake = _FakeUrlopen(_http_error(429), _http_error(502), _http_error(500))
    monkeypatch.setattr(http_mod, "urlopen", fake)

    with pytest.raises(GatewayUnavailable):
        http_gateway.retrieve("alice/preferences", "x")
    assert len(fake.requests) == 3


def test_http_client_errors_are_not_retried(monkeypatch: pytest.MonkeyPatch, http_gateway: HttpMemoryGateway) -> None:
    fake = _FakeUrlopen(_http_error(400))
    monkeypatch.setattr(http_mod, "urlopen", fake)

    with pytest.raises(GatewayError) as exc:
        http_gateway.store([MemoryRecord(namespace="alice/project-facts", text="a")])
    assert not isinstance(exc.value, GatewayUnavailable)
    assert len(fake.requests) == 1


def test_http_outcome_count_mismatch_is_an_error(
    monkeypatch: pytest.MonkeyPatch, http_gateway: HttpMemoryGateway
) -> None:
    monkeypatch.setattr(http_mod, "urlopen", _FakeUrlopen({"results": []}))
    with pytest.raises(GatewayError):
        http_gateway.store([MemoryRecord(namespace="alice/project-facts", text="a")])
