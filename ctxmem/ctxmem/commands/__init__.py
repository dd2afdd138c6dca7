"""CLI command implementations. Each run_* function returns an exit code."""

from __future__ import annotations

from ..artifact.publishers import register_default_publishers
from ..config import Config
from ..session.coordinator import SessionCoordinator


def build_coordinator(config: Config) -> SessionCoordinator:
    register_default_publishers(config)
    return SessionCoordinator(config)
