"""
Service wiring for the companion API.

Every service is constructed once, explicitly, in `build_container` and kept on
`app.state.container`. Routes reach them through the `get_*` dependencies, so
tests can swap the whole container for one built around fakes.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import Request

from core.cache import DecodedMediaCache, IdentityCache, SignedURLCache
from core.config import BackendSettings, SessionTokenStore
from core.exceptions import QueueDecodeError
from core.logging_config import get_logger
from providers.http_transport import HTTPTransport
from providers.local_store import AttachmentPrivacyMap, InMemorySessionStore, LocalSessionStore
from services.directory_service import AccountDirectoryService
from services.feed_service import FeedService
from services.feed_store import FeedStore
from services.media_service import MediaService
from services.publish_engine import PublishEngine
from services.publish_queue import PublishQueue

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: BackendSettings
    tokens: SessionTokenStore
    transport: HTTPTransport
    identity_cache: IdentityCache
    feed_store: FeedStore
    queue: PublishQueue
    engine: PublishEngine
    directory: AccountDirectoryService
    feed: FeedService
    media: MediaService

    async def close(self) -> None:
        await self.transport.close()


def open_queue(file_path: Path) -> PublishQueue:
    """
    Load the persisted queue. An undecodable file is moved aside to
    `<name>.corrupt` and the queue starts empty.
    """
    try:
        return PublishQueue(file_path)
    except QueueDecodeError as e:
        corrupt = file_path.with_name(file_path.name + ".corrupt")
        logger.error(f"{e.message}; moving it to {corrupt} and starting empty")
        file_path.replace(corrupt)
        return PublishQueue(file_path)


def build_container(
    settings: BackendSettings,
    session_store: Optional[LocalSessionStore] = None,
    tokens: Optional[SessionTokenStore] = None,
) -> ServiceContainer:
    tokens = tokens or SessionTokenStore(access_token=settings.access_token)
    transport = HTTPTransport(settings, tokens=tokens, auth_challenge=tokens.refresh)

    identity_cache = IdentityCache()
    feed_store = FeedStore()
    queue = open_queue(settings.queue_file)

    engine = PublishEngine(
        queue=queue,
        transport=transport,
        session_store=session_store if session_store is not None else InMemorySessionStore(),
        privacy=AttachmentPrivacyMap(settings.privacy_file),
        feed_store=feed_store,
        mode=settings.mode,
        owner_user_id=settings.owner_user_id,
    )
    directory = AccountDirectoryService(transport, cache=identity_cache, consumer=feed_store)
    feed = FeedService(transport, feed_store, directory, owner_user_id=settings.owner_user_id)
    media = MediaService(
        transport,
        SignedURLCache(),
        DecodedMediaCache(capacity=settings.media_cache_size),
        default_ttl_seconds=settings.signed_url_ttl_seconds,
    )

    logger.info(f"Service container built: {settings.summary()}")
    return ServiceContainer(
        settings=settings,
        tokens=tokens,
        transport=transport,
        identity_cache=identity_cache,
        feed_store=feed_store,
        queue=queue,
        engine=engine,
        directory=directory,
        feed=feed,
        media=media,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_engine(request: Request) -> PublishEngine:
    return get_container(request).engine


def get_queue(request: Request) -> PublishQueue:
    return get_container(request).queue


def get_directory(request: Request) -> AccountDirectoryService:
    return get_container(request).directory


def get_feed_service(request: Request) -> FeedService:
    return get_container(request).feed


def get_feed_store(request: Request) -> FeedStore:
    return get_container(request).feed_store


def get_media_service(request: Request) -> MediaService:
    return get_container(request).media
