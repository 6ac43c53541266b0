"""
Local Session Store Providers

The on-device session/attachment records and the staged media files live
outside the sync core. This module defines the read-only interface the flush
engine needs from them, a simple in-memory implementation, and the attachment
privacy map, which is a JSON file in the application-private directory.
"""

import asyncio
import json
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol
from uuid import UUID

from core.logging_config import get_logger
from core.persistence import atomic_write_json
from core.models import AttachmentKind

logger = get_logger(__name__)


@dataclass
class LocalAttachment:
    """A media file attached to a locally saved session"""

    id: UUID
    session_id: UUID
    kind: AttachmentKind
    file_path: Path
    display_name: Optional[str] = None

    @property
    def extension(self) -> str:
        suffix = self.file_path.suffix.lstrip(".").lower()
        if suffix:
            return suffix
        return {"image": "jpg", "video": "mov", "audio": "m4a"}[self.kind.value]

    @property
    def content_type(self) -> str:
        guessed, _ = mimetypes.guess_type(f"x.{self.extension}")
        return guessed or "application/octet-stream"


class LocalSessionStore(Protocol):
    """Read access to locally saved sessions and their attachments."""

    def attachments_for_session(self, session_id: UUID) -> List[LocalAttachment]:
        """Return every attachment of a session, in display order."""
        ...

    async def read_attachment(self, attachment: LocalAttachment) -> bytes:
        """Return the attachment's bytes."""
        ...


@dataclass
class InMemorySessionStore:
    """Session store backed by a dict of attachments, reading files from disk"""

    attachments: Dict[UUID, List[LocalAttachment]] = field(default_factory=dict)

    def add(self, attachment: LocalAttachment) -> None:
        self.attachments.setdefault(attachment.session_id, []).append(attachment)

    def attachments_for_session(self, session_id: UUID) -> List[LocalAttachment]:
        return list(self.attachments.get(session_id, []))

    async def read_attachment(self, attachment: LocalAttachment) -> bytes:
        return await asyncio.to_thread(attachment.file_path.read_bytes)


def privacy_key(attachment_id: UUID) -> str:
    return f"id://{attachment_id}"


class AttachmentPrivacyMap:
    """
    Per-attachment privacy flags persisted as a JSON object.

    An attachment with no entry is private (owner-only).
    """

    def __init__(self, file_path: Path):
        self.file_path = file_path
        self._map: Optional[Dict[str, bool]] = None

    def is_private(self, attachment_id: UUID) -> bool:
        return self._load().get(privacy_key(attachment_id), True)

    def set_private(self, attachment_id: UUID, value: bool) -> None:
        updated = dict(self._load())
        updated[privacy_key(attachment_id)] = value
        self._save(updated)
        self._map = updated

    def set_many(self, flags: Iterable[tuple]) -> None:
        updated = dict(self._load())
        for attachment_id, value in flags:
            updated[privacy_key(attachment_id)] = bool(value)
        self._save(updated)
        self._map = updated

    def _load(self) -> Dict[str, bool]:
        if self._map is not None:
            return self._map
        if not self.file_path.exists():
            self._map = {}
            return self._map
        try:
            decoded = json.loads(self.file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable privacy map {self.file_path}, treating all as private: {e}")
            decoded = {}
        self._map = {
            str(k): bool(v) for k, v in decoded.items()
        } if isinstance(decoded, dict) else {}
        return self._map

    def _save(self, data: Dict[str, bool]) -> None:
        atomic_write_json(self.file_path, data)
