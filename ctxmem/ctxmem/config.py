"""
Configuration for ctxmem, loaded from TOML.

Every key is optional; the defaults describe a local single-node setup that
keeps all state under `.ctxmem/` in the working directory.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError

CONFIG_FILENAME = "ctxmem.toml"


@dataclass(frozen=True)
class RetryConfig:
    attempts: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 2000


@dataclass(frozen=True)
class PromotionConfig:
    batch_size: int = 100
    promote_research_findings: bool = True


@dataclass(frozen=True)
class GatewayConfig:
    kind: str = "local"  # "local" | "http"
    url: str = ""
    timeout_s: float = 10.0
    token_env: str = "CTXMEM_MEMORY_TOKEN"


@dataclass(frozen=True)
class ArtifactConfig:
    publish_timeout_s: float = 30.0
    revision_timeout_s: float = 120.0
    document_root: str = "published"
    issue_tracker_url: str = ""
    issue_tracker_token_env: str = "CTXMEM_TRACKER_TOKEN"


@dataclass(frozen=True)
class Config:
    data_dir: Path = Path(".ctxmem")
    checkpoint_interval: int = 5
    turn_wait_s: float = 5.0
    promotion: PromotionConfig = field(default_factory=PromotionConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    artifacts: ArtifactConfig = field(default_factory=ArtifactConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)

    def document_root_path(self) -> Path:
        root = Path(self.artifacts.document_root)
        return root if root.is_absolute() else self.data_dir / root


def _coerce_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _positive_int(data: dict[str, Any], key: str, default: int) -> int:
    raw = data.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"{key} must be a positive integer (got {raw!r})")
    return raw


def _positive_float(data: dict[str, Any], key: str, default: float) -> float:
    raw = data.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise ConfigError(f"{key} must be a positive number (got {raw!r})")
    return float(raw)


def config_from_dict(data: dict[str, Any], *, base_dir: Path | None = None) -> Config:
    """
    Build a Config from parsed TOML data.

    Relative data_dir paths resolve against base_dir (the config file's
    directory) when given.
    """
    data_dir = Path(str(data.get("data_dir", ".ctxmem")))
    if base_dir is not None and not data_dir.is_absolute():
        data_dir = base_dir / data_dir

    promotion_raw = _coerce_dict(data.get("promotion"))
    gateway_raw = _coerce_dict(data.get("gateway"))
    artifacts_raw = _coerce_dict(data.get("artifacts"))
    retry_raw = _coerce_dict(data.get("retry"))

    kind = str(gateway_raw.get("kind", "local")).strip() or "local"
    if kind not in {"local", "http"}:
        raise ConfigError(f"gateway.kind must be 'local' or 'http' (got {kind!r})")
    url = str(gateway_raw.get("url", "")).strip()
    if kind == "http" and not url:
        raise ConfigError("gateway.url is required when gateway.kind = 'http'")

    return Config(
        data_dir=data_dir,
        checkpoint_interval=_positive_int(data, "checkpoint_interval", 5),
        turn_wait_s=_positive_float(data, "turn_wait_s", 5.0),
        promotion=PromotionConfig(
            batch_size=_positive_int(promotion_raw, "batch_size", 100),
            promote_research_findings=bool(promotion_raw.get("promote_research_findings", True)),
        ),
        gateway=GatewayConfig(
            kind=kind,
            url=url,
            timeout_s=_positive_float(gateway_raw, "timeout_s", 10.0),
            token_env=str(gateway_raw.get("token_env", "CTXMEM_MEMORY_TOKEN")),
        ),
        artifacts=ArtifactConfig(
            publish_timeout_s=_positive_float(artifacts_raw, "publish_timeout_s", 30.0),
            revision_timeout_s=_positive_float(artifacts_raw, "revision_timeout_s", 120.0),
            document_root=str(artifacts_raw.get("document_root", "published")),
            issue_tracker_url=str(artifacts_raw.get("issue_tracker_url", "")).strip(),
            issue_tracker_token_env=str(artifacts_raw.get("issue_tracker_token_env", "CTXMEM_TRACKER_TOKEN")),
        ),
        retry=RetryConfig(
            attempts=_positive_int(retry_raw, "attempts", 3),
            base_delay_ms=_positive_int(retry_raw, "base_delay_ms", 100),
            max_delay_ms=_positive_int(retry_raw, "max_delay_ms", 2000),
        ),
    )


def load_config(path: Path | None = None) -> Config:
    """
    Load configuration from a TOML file.

    Args:
        path: Explicit config path. When None, ./ctxmem.toml is used if it
            exists, otherwise defaults.

    Raises:
        ConfigError: if the file cannot be parsed or holds invalid values
    """
    if path is None:
        candidate = Path.cwd() / CONFIG_FILENAME
        if not candidate.exists():
            return Config()
        path = candidate

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigError(f"config file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML in {path}: {e}") from e

    return config_from_dict(data, base_dir=path.resolve().parent)
