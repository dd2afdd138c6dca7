"""
Content-addressed storage (CAS) for artifact bodies.

Bodies are stored by their sha256 hash, so identical versions share one
blob and every version row can verify its content. The content store is
separate from the artifact log - versions reference content by content_id.
"""

from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path


class ContentStore:
    """
    Content-addressed storage for artifact bodies.

    Bodies are stored in a two-level directory structure using
    the first 2 characters of the hash as the prefix:

        content/ab/ab1234...json

    This prevents directory bloat while maintaining fast lookups.
    """

    def __init__(self, content_dir: Path):
        """
        Initialize content store.

        Args:
            content_dir: Directory holding the prefix subdirectories
        """
        self.content_dir = content_dir

    def _content_path(self, content_id: str) -> Path:
        prefix = content_id[:2]
        return self.content_dir / prefix / f"{content_id}.json"

    @staticmethod
    def compute_hash(content: str) -> str:
        """Hex-encoded sha256 of the UTF-8 encoded body."""
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    def store(self, content: str) -> str:
        """
        Store a body and return its content_id.

        If the body already exists, this is a no-op (idempotent).
        """
        content_id = self.compute_hash(content)

        content_path = self._content_path(content_id)
        if content_path.exists():
            return content_id

        content_path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps({"_type": "text", "data": content}, indent=2)

        # Write atomically (write to temp, then rename)
        temp_path = content_path.with_suffix(".tmp")
        temp_path.write_text(serialized, encoding="utf-8")
        os.replace(temp_path, content_path)

        return content_id

    def get(self, content_id: str) -> str | None:
        """Retrieve a body by content_id, or None if not found."""
        if not content_id:
            return None
        content_path = self._content_path(content_id)
        if not content_path.exists():
            return None

        data = json.loads(content_path.read_text(encoding="utf-8"))
        if isinstance(data, dict) and data.get("_type") == "text":
            return str(data["data"])
        return None

    def exists(self, content_id: str) -> bool:
        return self._content_path(content_id).exists()

    def verify(self, content_id: str) -> bool:
        """
        Verify content integrity.

        Recomputes hash and compares to content_id.
        """
        content = self.get(content_id)
        if content is None:
            return False
        return self.compute_hash(content) == content_id
