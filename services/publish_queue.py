"""
Durable Publish Queue.

This module defines the `PublishQueue`, the at-least-once delivery queue of
pending "publish this session as a post" intents. It survives process restarts
by rewriting a single JSON snapshot file on every mutation.

Key Components:
- Upsert by post id: re-enqueuing an id merges into the existing entry using
  `PublishPayload.merged_with`; a stub enqueue never overwrites a richer entry.
- Bookkeeping: each entry carries `queued_at`, `attempts` and `last_error`,
  preserved across merges and updated by failed flush attempts.
- Backward-compatible load: the current schema is a list of payload objects;
  the legacy schema is a bare list of id strings, upgraded to stubs on load.

Architectural Design:
- Single owner: every mutation is synchronous, so a read-modify-persist cycle
  never spans an `await` and cannot be observed half-done by another task.
- Snapshot, not log: the queue holds human-paced posts and stays small, so the
  whole file is rewritten atomically each time.
- Persist first: a mutation writes the new list before it replaces the
  in-memory one, so a failed write leaves both unchanged.
"""

import json
from pathlib import Path
from typing import List, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import QueueDecodeError
from core.logging_config import get_logger
from core.models import PublishPayload, QueuedPublish
from core.persistence import atomic_write_json

logger = get_logger(__name__)


class PublishQueue:
    """File-persisted queue of pending publish payloads, keyed by post id"""

    def __init__(self, file_path: Path, load: bool = True):
        self.file_path = Path(file_path)
        self._items: List[QueuedPublish] = []
        if load:
            self._items = self.load_file(self.file_path)
            logger.info(f"Publish queue loaded {len(self._items)} items from {self.file_path}")

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, post_id: UUID) -> bool:
        return self._index_of(post_id) is not None

    def get(self, post_id: UUID) -> Optional[QueuedPublish]:
        index = self._index_of(post_id)
        return None if index is None else self._items[index]

    def snapshot(self) -> List[QueuedPublish]:
        """Items in queue order, as of now. Later mutations do not affect it."""
        return list(self._items)

    def payloads(self) -> List[PublishPayload]:
        return [item.to_payload() for item in self._items]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enqueue(self, payload: Union[PublishPayload, UUID]) -> QueuedPublish:
        """
        Insert or merge a payload. A bare post id is treated as a stub and
        only inserted when no entry exists yet.
        """
        if isinstance(payload, UUID):
            return self.enqueue_stub(payload)

        items = list(self._items)
        index = self._index_of(payload.id)
        if index is None:
            entry = QueuedPublish.from_payload(payload)
            items.append(entry)
            action = "insert"
        else:
            existing = items[index]
            merged = existing.to_payload().merged_with(payload)
            entry = QueuedPublish.from_payload(merged, previous=existing)
            items[index] = entry
            action = "merge"

        self._commit(items)
        logger.info(
            f"Queue enqueue ({action}) postID={payload.id} "
            f"public={entry.is_public} total={len(self._items)}"
        )
        return entry

    def enqueue_stub(self, post_id: UUID) -> QueuedPublish:
        existing = self.get(post_id)
        if existing is not None:
            logger.debug(f"Queue stub enqueue ignored, postID={post_id} already queued")
            return existing

        entry = QueuedPublish.from_payload(PublishPayload.stub(post_id))
        self._commit(self._items + [entry])
        logger.info(f"Queue enqueue (stub) postID={post_id} total={len(self._items)}")
        return entry

    def dequeue(self, post_id: UUID, expected: Optional[PublishPayload] = None) -> bool:
        """
        Remove the entry for `post_id`. With `expected`, the entry is only
        removed while its payload still equals it, so a merge that landed
        after `expected` was read stays queued.
        """
        index = self._index_of(post_id)
        if index is None:
            return False
        current = self._items[index].to_payload()
        if expected is not None and current.model_dump() != expected.model_dump():
            logger.info(f"Queue dequeue skipped, postID={post_id} changed since it was read")
            return False
        self._commit(self._items[:index] + self._items[index + 1:])
        logger.info(f"Queue dequeue postID={post_id} total={len(self._items)}")
        return True

    def record_failure(self, post_id: UUID, error: str) -> None:
        index = self._index_of(post_id)
        if index is None:
            return
        items = list(self._items)
        entry = items[index]
        items[index] = entry.model_copy(
            update={"attempts": entry.attempts + 1, "last_error": error}
        )
        self._commit(items)

    def clear(self) -> None:
        self._commit([])
        logger.info("Queue cleared")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _index_of(self, post_id: UUID) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.id == post_id:
                return index
        return None

    def _commit(self, items: List[QueuedPublish]) -> None:
        """Persist `items`, then make them current. A failed write changes nothing."""
        try:
            atomic_write_json(self.file_path, [item.model_dump(mode="json") for item in items])
        except OSError as e:
            logger.error(f"Queue persist error for {self.file_path}: {e}")
            raise
        self._items = items

    @staticmethod
    def load_file(file_path: Path) -> List[QueuedPublish]:
        """
        Decode a persisted queue file.

        Raises:
            QueueDecodeError: If the file matches neither the current nor the
                legacy schema.
        """
        if not file_path.exists():
            return []

        try:
            raw = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise QueueDecodeError(str(file_path), str(e))

        if not isinstance(raw, list):
            raise QueueDecodeError(str(file_path), "top-level value is not a list")

        try:
            return PublishQueue._dedupe([QueuedPublish.model_validate(item) for item in raw])
        except PydanticValidationError as current_error:
            try:
                legacy_ids = [UUID(item) for item in raw]
            except (TypeError, ValueError, AttributeError):
                raise QueueDecodeError(
                    str(file_path), f"neither current nor legacy schema: {current_error}"
                )

        logger.info(f"Upgrading legacy queue file with {len(legacy_ids)} ids")
        return PublishQueue._dedupe(
            [QueuedPublish.from_payload(PublishPayload.stub(post_id)) for post_id in legacy_ids]
        )

    @staticmethod
    def _dedupe(items: List[QueuedPublish]) -> List[QueuedPublish]:
        seen = set()
        unique = []
        for item in items:
            if item.id in seen:
                continue
            seen.add(item.id)
            unique.append(item)
        return unique
