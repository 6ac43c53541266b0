"""
Feed Service.

Fetches published posts from the REST backend, reports the outcome through the
`FeedStore` and resolves post authors through the `AccountDirectoryService`.

Author resolution is best-effort: a failed directory lookup is logged and the
feed is still returned, with authors rendered as their opaque user ids.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.exceptions import DecodingError, MissingOwnerError, SyncAPIException
from core.logging_config import get_logger
from core.models import BackendPost
from providers.http_transport import HTTPTransport
from services.directory_service import AccountDirectoryService
from services.feed_store import FeedStore

logger = get_logger(__name__)

POSTS_PATH = "rest/v1/posts"


class FeedScope(str, Enum):
    MINE = "mine"
    ALL = "all"


@dataclass
class FeedPage:
    scope: FeedScope
    posts: List[BackendPost] = field(default_factory=list)
    authors: Dict[str, str] = field(default_factory=dict)


def decode_posts(raw: bytes) -> List[BackendPost]:
    try:
        rows = json.loads(raw)
    except ValueError as e:
        raise DecodingError("feed response", str(e))
    if not isinstance(rows, list):
        raise DecodingError("feed response", "expected a JSON array")
    try:
        return [BackendPost.model_validate(row) for row in rows]
    except PydanticValidationError as e:
        raise DecodingError("feed response", str(e))


class FeedService:
    """Feed fetch orchestration"""

    def __init__(
        self,
        transport: HTTPTransport,
        store: FeedStore,
        directory: AccountDirectoryService,
        owner_user_id: Optional[str] = None,
    ):
        self.transport = transport
        self.store = store
        self.directory = directory
        self.owner_user_id = owner_user_id

    def _query_for(self, scope: FeedScope) -> List[tuple]:
        query = [("select", "*")]
        if scope is FeedScope.MINE:
            if not self.owner_user_id:
                raise MissingOwnerError("fetch own feed")
            query.append(("owner_user_id", f"eq.{self.owner_user_id}"))
        query.append(("order", "created_at.desc"))
        return query

    async def fetch(self, scope: FeedScope = FeedScope.ALL) -> FeedPage:
        """
        Fetch one feed page.

        Raises:
            SyncAPIException: The fetch failed. The failure is also recorded
                on the feed store.
        """
        scope = FeedScope(scope)
        targets = [self.owner_user_id] if scope is FeedScope.MINE and self.owner_user_id else []
        self.store.begin_fetch(self.owner_user_id, scope.value, targets)

        try:
            raw = await self.transport.request(POSTS_PATH, query=self._query_for(scope))
            posts = decode_posts(raw)
        except SyncAPIException as e:
            self.store.end_fetch_failure(e)
            raise

        mine = [post for post in posts if self.owner_user_id and post.owner_user_id == self.owner_user_id]
        self.store.end_fetch_success(posts, mine, posts if scope is FeedScope.ALL else [])

        return FeedPage(scope=scope, posts=posts, authors=await self._resolve_authors(posts))

    async def _resolve_authors(self, posts: List[BackendPost]) -> Dict[str, str]:
        author_ids = [post.owner_user_id for post in posts if post.owner_user_id]
        if not author_ids:
            return {}
        try:
            await self.directory.resolve_accounts(author_ids)
        except SyncAPIException as e:
            logger.warning(f"Author resolution failed, showing opaque ids: {e.message}")
        return {user_id: self.directory.display_name_for(user_id) for user_id in author_ids}
