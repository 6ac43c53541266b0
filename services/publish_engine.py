"""
Publish / Flush Engine.

This module defines the `PublishEngine`, which drains the `PublishQueue` against
the REST + storage backend and leaves only genuinely failed items queued.

Key Components:
- Per-item protocol, strictly sequential in snapshot order:
  1. POST the post row; a duplicate-key conflict means the row already exists
     from an earlier partial attempt and counts as success so far.
  2. PATCH the mutable metadata, always, so a retried publish cannot leave
     stale visibility behind the create-only step.
  3. Upload every non-private local attachment of the session to a
     deterministic storage path. One failed upload aborts the item.
  4. PATCH the full attachment reference list, empty when nothing is eligible.
  5. Dequeue on success unless the entry was merged into meanwhile, in which
     case it stays queued for the next flush; otherwise record the failure
     and move on.
- Mode gating: only the network-enabled backend modes do any network work.
  In local simulation a flush is a no-op that leaves the queue untouched.
- `publish` / `unpublish`: the entry points the UI collaborator calls on save
  and share actions.

Architectural Design:
- No internal scheduler: the engine never sleeps or backs off. Callers decide
  when to flush again.
- One flush at a time: an `asyncio.Lock` serialises `flush_now`, so a second
  caller waits instead of interleaving with a running flush.
- Attachments are committed only after every upload succeeded, so an aborted
  item can at worst leave orphaned blobs, never a half-valid reference list.
"""

import asyncio
import json
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional
from uuid import UUID

from core.config import BackendMode
from core.exceptions import HTTPStatusError, MissingOwnerError, SyncAPIException, TransportError
from core.logging_config import get_logger, new_correlation_id, set_correlation_id
from core.models import (
    DEFAULT_ATTACHMENT_BUCKET,
    AttachmentRef,
    AttachmentsPatch,
    PostInsert,
    PostMetadataPatch,
    PublishPayload,
)
from providers.http_transport import HTTPTransport
from providers.local_store import AttachmentPrivacyMap, LocalSessionStore
from services.feed_store import FeedStore
from services.publish_queue import PublishQueue

logger = get_logger(__name__)

POSTS_PATH = "rest/v1/posts"
UNIQUE_VIOLATION_SQLSTATE = "23505"
DUPLICATE_KEY_MARKERS = (
    UNIQUE_VIOLATION_SQLSTATE,
    "duplicate key",
    "unique constraint",
    "posts_pkey",
    "already exists",
)


def is_duplicate_key_conflict(error: Exception) -> bool:
    """
    True only for an HTTP 409 whose body identifies a primary-key or unique
    violation. A structured `code` field is authoritative when present; the
    substring match on the body text is the fallback.
    """
    if not isinstance(error, HTTPStatusError) or not error.is_conflict:
        return False

    try:
        body = json.loads(error.body)
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("code"):
        return str(body["code"]) == UNIQUE_VIOLATION_SQLSTATE

    text = error.body.decode("utf-8", errors="replace").lower()
    return any(marker in text for marker in DUPLICATE_KEY_MARKERS)


def attachment_object_path(owner_user_id: str, post_id: UUID, attachment_id: UUID, extension: str) -> str:
    return f"{owner_user_id}/{post_id}/{attachment_id}.{extension}".lower()


@dataclass
class FlushReport:
    """Outcome of one flush pass"""

    mode: str
    attempted: int = 0
    published: int = 0
    failed: int = 0
    remaining: int = 0
    skipped: bool = False
    skip_reason: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class PublishEngine:
    """Drives queued payloads through the publish protocol"""

    def __init__(
        self,
        queue: PublishQueue,
        transport: HTTPTransport,
        session_store: LocalSessionStore,
        privacy: AttachmentPrivacyMap,
        feed_store: Optional[FeedStore] = None,
        mode: BackendMode = BackendMode.LOCAL_SIMULATION,
        owner_user_id: Optional[str] = None,
        bucket: str = DEFAULT_ATTACHMENT_BUCKET,
    ):
        self.queue = queue
        self.transport = transport
        self.session_store = session_store
        self.privacy = privacy
        self.feed_store = feed_store
        self.mode = mode
        self.owner_user_id = owner_user_id
        self.bucket = bucket
        self._flush_lock = asyncio.Lock()

    def set_mode(self, mode: BackendMode) -> None:
        logger.info(f"Backend mode {self.mode.value} -> {mode.value}")
        self.mode = mode

    @property
    def can_reach_backend(self) -> bool:
        return self.mode.is_network_enabled and self.transport.is_configured

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def publish(self, payload: PublishPayload, should_publish: bool = True) -> Optional[FlushReport]:
        """
        Queue a publish intent and attempt a flush right away. With
        `should_publish=False` the post is unpublished instead and no report
        is produced.
        """
        if not should_publish:
            await self.unpublish(payload.id)
            return None
        self.queue.enqueue(payload)
        return await self.flush_now()

    async def unpublish(self, post_id: UUID) -> bool:
        """
        Drop a queued publish and, when the backend is reachable, delete the
        remote post. Returns False when the remote delete failed.
        """
        self.queue.dequeue(post_id)
        if not self.can_reach_backend:
            logger.info(f"Unpublish {post_id} kept local (mode={self.mode.value})")
            return True

        try:
            await self.transport.request(
                POSTS_PATH,
                method="DELETE",
                query=[("id", f"eq.{post_id}")],
                headers={"Prefer": "return=minimal"},
            )
        except SyncAPIException as e:
            logger.warning(f"Delete post {post_id} failed: {e.message}")
            if self.feed_store is not None:
                self.feed_store.record_sync_error(f"delete {post_id}: {e.message}")
            return False

        logger.info(f"Deleted remote post {post_id}")
        return True

    async def flush_now(self) -> FlushReport:
        async with self._flush_lock:
            set_correlation_id(new_correlation_id("flush"))
            try:
                return await self._flush()
            finally:
                set_correlation_id(None)

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def _flush(self) -> FlushReport:
        report = FlushReport(mode=self.mode.value)
        items = self.queue.snapshot()
        logger.info(f"Flush requested mode={self.mode.value} queued={len(items)}")

        if not self.mode.is_network_enabled:
            report.skipped, report.skip_reason = True, "local_mode"
        elif not self.transport.is_configured:
            report.skipped, report.skip_reason = True, "not_configured"

        if report.skipped:
            report.remaining = len(self.queue)
            logger.info(f"Flush skipped ({report.skip_reason}) remaining={report.remaining}")
            return report

        for item in items:
            report.attempted += 1
            payload = item.to_payload()
            try:
                await self._publish_item(payload)
                removed = self.queue.dequeue(payload.id, expected=payload)
            except (SyncAPIException, OSError) as e:
                self._record_failure(report, payload.id, e)
                continue

            report.published += 1
            if not removed and payload.id in self.queue:
                logger.info(f"Post {payload.id} changed during flush, kept for the next one")

        report.remaining = len(self.queue)
        if report.failed == 0 and self.feed_store is not None:
            self.feed_store.clear_sync_error()
        logger.info(
            f"Flush completed published={report.published} failed={report.failed} "
            f"remaining={report.remaining}"
        )
        return report

    def _record_failure(self, report: FlushReport, post_id: UUID, error: Exception) -> None:
        message = error.message if isinstance(error, SyncAPIException) else str(error)
        report.failed += 1
        report.errors[str(post_id)] = message
        try:
            self.queue.record_failure(post_id, message)
        except (SyncAPIException, OSError) as e:
            logger.error(f"Could not record failure for {post_id}: {e}")
        if self.feed_store is not None:
            self.feed_store.record_sync_error(f"publish {post_id}: {message}")
        logger.warning(f"Publish {post_id} left queued: {message}")

    async def _publish_item(self, payload: PublishPayload) -> None:
        owner = self.owner_user_id
        if not owner:
            raise MissingOwnerError("publish")

        await self._create_post(payload, owner)

        await self.transport.request(
            POSTS_PATH,
            method="PATCH",
            query=[("id", f"eq.{payload.id}")],
            json_body=PostMetadataPatch.from_payload(payload).to_body(),
            headers={"Prefer": "return=minimal"},
        )

        if payload.session_ref is None:
            logger.debug(f"Post {payload.id} has no session reference, skipping attachments")
            return

        refs = await self._upload_attachments(payload, owner)
        await self.transport.request(
            POSTS_PATH,
            method="PATCH",
            query=[("id", f"eq.{payload.id}")],
            json_body=AttachmentsPatch(attachments=refs).to_body(),
            headers={"Prefer": "return=minimal"},
        )
        logger.info(f"Post {payload.id} published with {len(refs)} attachments")

    async def _create_post(self, payload: PublishPayload, owner: str) -> None:
        try:
            await self.transport.request(
                POSTS_PATH,
                method="POST",
                json_body=PostInsert.from_payload(payload, owner).to_body(),
                headers={"Prefer": "return=minimal"},
            )
        except HTTPStatusError as e:
            if not is_duplicate_key_conflict(e):
                raise
            logger.info(f"Post {payload.id} already exists, reconciling")

    async def _upload_attachments(self, payload: PublishPayload, owner: str) -> List[AttachmentRef]:
        refs: List[AttachmentRef] = []
        for attachment in self.session_store.attachments_for_session(payload.session_ref):
            if self.privacy.is_private(attachment.id):
                continue

            try:
                data = await self.session_store.read_attachment(attachment)
            except OSError as e:
                raise TransportError(str(attachment.file_path), f"cannot read attachment: {e}")

            path = attachment_object_path(owner, payload.id, attachment.id, attachment.extension)
            await self.transport.upload_object(self.bucket, path, data, attachment.content_type)
            refs.append(
                AttachmentRef(
                    kind=attachment.kind,
                    bucket=self.bucket,
                    path=path,
                    display_name=attachment.display_name,
                )
            )
        return refs
