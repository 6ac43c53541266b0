"""
API Endpoints for the Practice Sync companion service.

This module defines the REST surface through which the UI collaborator drives
the sync core.

Endpoints Provided:
- `/publish`, `/publish/{post_id}`: queue a publish intent (and flush), or
  unpublish a post.
- `/sync/flush`, `/sync/queue`: trigger a flush, inspect or clear the queue.
- `/directory/*`: resolve and search account identities, maintain the owner's
  own directory row.
- `/feed`, `/feed/state`: fetch the feed and read the Feed Store snapshot.
- `/session/sign-out`: reset per-session observable state.
- `/media/signed-url`: mint or reuse a signed storage URL.

Architectural Design:
- Dependency Injection: services come from the `ServiceContainer` through the
  `get_*` dependencies, never from module globals.
- Error Handling: routes let `SyncAPIException`s propagate; the application's
  exception handler turns them into JSON error responses.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from core.logging_config import log_function_call
from core.models import DirectoryIdentity, PublishPayload
from services.directory_service import AccountDirectoryService
from services.feed_service import FeedScope, FeedService
from services.feed_store import FeedStore
from services.media_service import MediaService
from services.publish_engine import PublishEngine
from services.publish_queue import PublishQueue
from .dependencies import (
    get_directory,
    get_engine,
    get_feed_service,
    get_feed_store,
    get_media_service,
    get_queue,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Sync"])


# Request/Response Models
class PublishResponse(BaseModel):
    post_id: UUID
    queued: bool
    report: Optional[Dict[str, Any]] = None


class UpsertSelfRequest(BaseModel):
    user_id: str
    display_name: str
    account_handle: Optional[str] = None
    lookup_enabled: bool = True
    location: Optional[str] = None


class AvatarKeyRequest(BaseModel):
    user_id: str
    avatar_key: Optional[str] = None


# Publishing
@router.post("/publish", response_model=PublishResponse)
@log_function_call(logger)
async def publish(
    payload: PublishPayload,
    should_publish: bool = True,
    engine: PublishEngine = Depends(get_engine),
):
    """Queue a publish intent and flush, or unpublish when `should_publish` is false"""
    report = await engine.publish(payload, should_publish=should_publish)
    return PublishResponse(
        post_id=payload.id,
        queued=payload.id in engine.queue,
        report=report.to_dict() if report is not None else None,
    )


@router.delete("/publish/{post_id}")
@log_function_call(logger)
async def unpublish(post_id: UUID, engine: PublishEngine = Depends(get_engine)):
    deleted = await engine.unpublish(post_id)
    return {"post_id": str(post_id), "remote_deleted": deleted}


# Sync control
@router.post("/sync/flush")
@log_function_call(logger)
async def flush(engine: PublishEngine = Depends(get_engine)):
    report = await engine.flush_now()
    return report.to_dict()


@router.get("/sync/queue")
async def list_queue(queue: PublishQueue = Depends(get_queue)):
    items = [item.model_dump(mode="json") for item in queue.snapshot()]
    return {"count": len(items), "items": items}


@router.delete("/sync/queue")
async def clear_queue(queue: PublishQueue = Depends(get_queue)):
    removed = len(queue)
    queue.clear()
    logger.info(f"Queue cleared via API, removed {removed} items")
    return {"removed": removed}


# Directory
@router.get("/directory/resolve", response_model=Dict[str, DirectoryIdentity])
async def resolve_accounts(
    ids: List[str] = Query(default=[]),
    force_refresh: bool = False,
    directory: AccountDirectoryService = Depends(get_directory),
):
    return await directory.resolve_accounts(ids, force_refresh=force_refresh)


@router.get("/directory/search", response_model=List[DirectoryIdentity])
async def search_accounts(
    q: str = "", directory: AccountDirectoryService = Depends(get_directory)
):
    return await directory.search(q)


@router.put("/directory/self", response_model=DirectoryIdentity)
async def upsert_self(
    request: UpsertSelfRequest,
    directory: AccountDirectoryService = Depends(get_directory),
):
    return await directory.upsert_self(
        request.user_id,
        request.display_name,
        account_handle=request.account_handle,
        lookup_enabled=request.lookup_enabled,
        location=request.location,
    )


@router.put("/directory/self/avatar")
async def update_avatar_key(
    request: AvatarKeyRequest,
    directory: AccountDirectoryService = Depends(get_directory),
):
    await directory.update_self_avatar_key(request.user_id, request.avatar_key)
    return {"user_id": request.user_id, "avatar_key": request.avatar_key}


# Feed
@router.get("/feed")
async def fetch_feed(
    scope: FeedScope = FeedScope.ALL,
    feed: FeedService = Depends(get_feed_service),
):
    page = await feed.fetch(scope)
    return {
        "scope": page.scope.value,
        "count": len(page.posts),
        "posts": [post.model_dump(mode="json") for post in page.posts],
        "authors": page.authors,
    }


@router.get("/feed/state")
async def feed_state(store: FeedStore = Depends(get_feed_store)):
    return store.snapshot()


@router.post("/session/sign-out")
async def sign_out(store: FeedStore = Depends(get_feed_store)):
    store.reset_for_sign_out()
    return {"status": "signed_out", "directory_accounts": len(store.directory_accounts)}


# Media
@router.get("/media/signed-url")
async def signed_url(
    bucket: str,
    path: str,
    ttl: Optional[int] = Query(default=None, ge=0),
    media: MediaService = Depends(get_media_service),
):
    url = await media.signed_url(bucket, path, ttl_seconds=ttl)
    return {"bucket": bucket, "path": path, "url": url}
