"""Long-term memory HTTP client (small, dependency-free).

Speaks a minimal JSON protocol to a remote memory service:
  - POST {base}/v1/records                       store a batch
  - POST {base}/v1/namespaces/{namespace}/search  ranked retrieval

Transport failures, 429 and 5xx are transient (GatewayUnavailable) and are
retried with bounded backoff. Other 4xx responses are GatewayError and are
not retried.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from ..errors import GatewayError, GatewayUnavailable
from ..util import retry_transient
from .gateway import (
    ERROR_REJECTED,
    MemoryGateway,
    MemoryRecord,
    RecordOutcome,
    RetrievedRecord,
)

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpGatewayConfig:
    base_url: str
    token: str | None = None
    timeout_s: float = 10.0
    retry_attempts: int = 3
    retry_base_delay_ms: int = 100
    retry_max_delay_ms: int = 2000

    @classmethod
    def from_config(cls, config: Config) -> HttpGatewayConfig:
        return cls(
            base_url=config.gateway.url,
            token=os.environ.get(config.gateway.token_env) or None,
            timeout_s=config.gateway.timeout_s,
            retry_attempts=config.retry.attempts,
            retry_base_delay_ms=config.retry.base_delay_ms,
            retry_max_delay_ms=config.retry.max_delay_ms,
        )


class HttpMemoryGateway(MemoryGateway):
    """Minimal JSON-over-HTTP memory client."""

    def __init__(self, cfg: HttpGatewayConfig) -> None:
        self._cfg = cfg
        self._base = cfg.base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._cfg.token:
            headers["Authorization"] = f"Bearer {self._cfg.token}"
        return headers

    def _post_once(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        req = Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers=self._headers(),
        )
        try:
            with urlopen(req, timeout=self._cfg.timeout_s) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as e:
            if e.code == 429 or e.code >= 500:
                raise GatewayUnavailable(f"memory service HTTP {e.code}: {e.reason}") from e
            raise GatewayError(f"memory service HTTP {e.code}: {e.reason}") from e
        except URLError as e:
            raise GatewayUnavailable(f"memory service connection error: {e.reason}") from e
        except TimeoutError as e:
            raise GatewayUnavailable(f"memory service timed out after {self._cfg.timeout_s}s") from e
        except json.JSONDecodeError as e:
            raise GatewayError(f"memory service returned invalid JSON: {e}") from e

    def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        return retry_transient(
            lambda: self._post_once(url, body),
            retryable=(GatewayUnavailable,),
            attempts=self._cfg.retry_attempts,
            base_delay_ms=self._cfg.retry_base_delay_ms,
            max_delay_ms=self._cfg.retry_max_delay_ms,
        )

    def store(self, records: Sequence[MemoryRecord]) -> list[RecordOutcome]:
        if not records:
            return []
        payload = self._post(
            f"{self._base}/v1/records",
            {"records": [r.to_dict() for r in records]},
        )
        results = payload.get("results") or []
        if len(results) != len(records):
            raise GatewayError(
                f"memory service returned {len(results)} outcomes for {len(records)} records"
            )

        outcomes: list[RecordOutcome] = []
        for raw in results:
            if isinstance(raw, dict) and raw.get("ok") and raw.get("id"):
                outcomes.append(RecordOutcome.success(str(raw["id"])))
            else:
                code = raw.get("error") if isinstance(raw, dict) else None
                outcomes.append(RecordOutcome.failure(str(code or ERROR_REJECTED)))
        return outcomes

    def retrieve(self, namespace: str, query: str, top_k: int = 5) -> list[RetrievedRecord]:
        if top_k <= 0:
            return []
        payload = self._post(
            f"{self._base}/v1/namespaces/{quote(namespace, safe='')}/search",
            {"query": query, "top_k": top_k},
        )
        records: list[RetrievedRecord] = []
        for raw in payload.get("results") or []:
            if not isinstance(raw, dict):
                continue
            records.append(
                RetrievedRecord(
                    record_id=str(raw.get("id", "")),
                    namespace=namespace,
                    text=str(raw.get("text", "")),
                    relevance_score=float(raw.get("score", 0.0)),
                    metadata=raw.get("metadata") or {},
                )
            )
        records.sort(key=lambda r: -r.relevance_score)
        return records[:top_k]
