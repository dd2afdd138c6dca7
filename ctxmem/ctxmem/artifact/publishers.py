"""
Publishers for approved artifacts.

A publisher pushes one artifact version to an outside system and returns
where it landed. Publishers register themselves by target name; the
lifecycle manager looks them up when a human triggers a publish.
"""

from __future__ import annotations

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import frontmatter

from ..errors import PublishFailure
from ..util import safe_segment
from .events import TARGET_DOCUMENT_REPOSITORY, TARGET_ISSUE_TRACKER

if TYPE_CHECKING:
    from ..config import Config
    from .models import Artifact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishReceipt:
    url: str
    external_id: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "external_id": self.external_id}


class Publisher(ABC):
    """Pushes an artifact to an external destination."""

    target: str = ""

    @abstractmethod
    def publish(self, artifact: "Artifact", target_config: dict[str, Any]) -> PublishReceipt:
        """
        Publish the artifact's current content.

        Raises:
            PublishFailure: the destination rejected the artifact
        """


# -----------------------------------------------------------------------------
# Document repository
# -----------------------------------------------------------------------------

_SLUG = re.compile(r"[^a-z0-9]+")


def slugify(title: str) -> str:
    slug = _SLUG.sub("-", title.lower()).strip("-")
    return slug or "untitled"


class DocumentRepositoryPublisher(Publisher):
    """
    Writes the artifact as Markdown with YAML front matter.

    target_config keys (all optional):
        folder: subdirectory under the repository root
        filename: file name, defaults to "<slug>.md"
    """

    target = TARGET_DOCUMENT_REPOSITORY

    def __init__(self, root: Path) -> None:
        self.root = root

    def publish(self, artifact: "Artifact", target_config: dict[str, Any]) -> PublishReceipt:
        if artifact.content is None:
            raise PublishFailure(artifact.artifact_id, "artifact has no content")

        folder = self.root
        try:
            for part in str(target_config.get("folder", "")).split("/"):
                if part:
                    folder = folder / safe_segment(part)
            filename = safe_segment(str(target_config.get("filename") or f"{slugify(artifact.title)}.md"))
        except ValueError as e:
            raise PublishFailure(artifact.artifact_id, str(e)) from e

        post = frontmatter.Post(
            artifact.content,
            title=artifact.title,
            artifact_id=artifact.artifact_id,
            artifact_type=artifact.artifact_type,
            session_id=artifact.session_id,
            version=artifact.version,
            content_id=artifact.content_id,
        )

        folder.mkdir(parents=True, exist_ok=True)
        path = folder / filename
        path.write_text(frontmatter.dumps(post) + "\n", encoding="utf-8")
        logger.info("Published %s v%d to %s", artifact.artifact_id, artifact.version, path)

        relative = path.relative_to(self.root).as_posix()
        return PublishReceipt(url=path.resolve().as_uri(), external_id=relative)


# -----------------------------------------------------------------------------
# Issue tracker
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class IssueTrackerConfig:
    base_url: str
    token: str | None = None
    timeout_s: float = 30.0


class IssueTrackerPublisher(Publisher):
    """
    Creates an issue over JSON/HTTP.

    POST {base_url}/issues with {"title", "body", "labels", "project"};
    the response must carry "key" (or "id") and "url".
    """

    target = TARGET_ISSUE_TRACKER

    def __init__(self, cfg: IssueTrackerConfig) -> None:
        self._cfg = cfg
        self._issues_url = f"{cfg.base_url.rstrip('/')}/issues"

    def publish(self, artifact: "Artifact", target_config: dict[str, Any]) -> PublishReceipt:
        body = {
            "title": artifact.title,
            "body": artifact.content or "",
            "labels": list(target_config.get("labels", [])),
            "project": target_config.get("project"),
            "metadata": {
                "artifact_id": artifact.artifact_id,
                "version": artifact.version,
            },
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._cfg.token:
            headers["Authorization"] = f"Bearer {self._cfg.token}"

        req = Request(
            self._issues_url,
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with urlopen(req, timeout=self._cfg.timeout_s) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:200]
            raise PublishFailure(artifact.artifact_id, f"HTTP {e.code}: {detail}") from e
        except URLError as e:
            raise PublishFailure(artifact.artifact_id, f"connection error: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise PublishFailure(artifact.artifact_id, "issue tracker returned invalid JSON") from e

        key = payload.get("key") or payload.get("id")
        url = payload.get("url")
        if not key or not url:
            raise PublishFailure(artifact.artifact_id, "issue tracker response missing key or url")
        return PublishReceipt(url=str(url), external_id=str(key))


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------

# Global registry: target name → publisher instance
_PUBLISHERS: dict[str, Publisher] = {}


def register_publisher(publisher: Publisher, target: str | None = None) -> None:
    """Register a publisher under its target name (or an explicit one)."""
    _PUBLISHERS[target or publisher.target] = publisher


def get_publisher(target: str) -> Publisher | None:
    return _PUBLISHERS.get(target)


def list_publishers() -> list[str]:
    return list(_PUBLISHERS.keys())


def clear_publishers() -> None:
    """Clear all registered publishers (for testing)."""
    _PUBLISHERS.clear()


def register_default_publishers(config: "Config") -> None:
    """Register the built-in publishers that the configuration enables."""
    register_publisher(DocumentRepositoryPublisher(config.document_root_path()))

    artifacts = config.artifacts
    if artifacts.issue_tracker_url:
        register_publisher(
            IssueTrackerPublisher(
                IssueTrackerConfig(
                    base_url=artifacts.issue_tracker_url,
                    token=os.environ.get(artifacts.issue_tracker_token_env) or None,
                    timeout_s=artifacts.publish_timeout_s,
                )
            )
        )
