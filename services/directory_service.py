"""
Account Directory Service.

This module defines the `AccountDirectoryService`, which turns opaque backend
user ids into display-ready identity records and lets the signed-in owner
maintain their own directory row.

Key Components:
- Batched resolution: `resolve_accounts` dedupes the requested ids, serves what
  it can from the identity cache and asks the backend for exactly the rest in
  one RPC call. `force_refresh` bypasses the cache for every requested id.
- Search: `search` is the only read path that needs no relationship between the
  caller and the target, and it only answers explicit queries.
- Owner writes: `upsert_self` and `update_self_avatar_key` sanitize their input,
  write through the REST backend and then merge the result into the cache and
  into the downstream identity consumer.

Architectural Design:
- Cache-aside with merge semantics: every write path merges into the identity
  cache instead of replacing it, so a slow stale response cannot erase a fresher
  concurrent write.
- Degradation at the boundary: `display_name_for` falls back to the opaque id
  when nothing is known, so callers never fail on a missing identity.
"""

import json
import re
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from core.cache import IdentityCache
from core.exceptions import DecodingError, ValidationError
from core.logging_config import get_logger
from core.models import (
    AvatarKeyPatch,
    DirectoryIdentity,
    DirectoryLookupRequest,
    DirectorySearchRequest,
    DirectoryUpsert,
)
from providers.http_transport import HTTPTransport

logger = get_logger(__name__)

HANDLE_MIN_LENGTH = 3
HANDLE_MAX_LENGTH = 24
_HANDLE_DISALLOWED = re.compile(r"[^a-z0-9_]")

LOOKUP_PATH = "rest/v1/rpc/get_account_directory_by_user_ids"
SEARCH_PATH = "rest/v1/rpc/search_account_directory"
UPSERT_PATH = "rest/v1/account_directory?on_conflict=user_id"
DIRECTORY_PATH = "rest/v1/account_directory"


class IdentityConsumer(Protocol):
    def merge_directory_accounts(self, accounts: Mapping[str, DirectoryIdentity]) -> None:
        ...


def sanitize_account_handle(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a handle to lowercase [a-z0-9_]{3,24}, or None when the result
    would be invalid. An invalid handle is never sent.
    """
    if raw is None:
        return None
    handle = raw.strip().lower()
    if handle.startswith("@"):
        handle = handle[1:]
    handle = _HANDLE_DISALLOWED.sub("", handle)
    if not HANDLE_MIN_LENGTH <= len(handle) <= HANDLE_MAX_LENGTH:
        return None
    return handle


def sanitize_location(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    location = raw.strip()
    return location or None


def dedupe_preserving_order(values: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def decode_identity_rows(raw: bytes, what: str) -> List[DirectoryIdentity]:
    try:
        rows = json.loads(raw)
    except ValueError as e:
        raise DecodingError(what, str(e))
    if not isinstance(rows, list):
        raise DecodingError(what, "expected a JSON array")
    try:
        return [DirectoryIdentity.model_validate(row) for row in rows]
    except ValueError as e:
        raise DecodingError(what, str(e))


class AccountDirectoryService:
    """Batched, cached directory lookups plus owner-only writes"""

    def __init__(
        self,
        transport: HTTPTransport,
        cache: Optional[IdentityCache] = None,
        consumer: Optional[IdentityConsumer] = None,
    ):
        self.transport = transport
        self.cache = cache if cache is not None else IdentityCache()
        self.consumer = consumer

    async def resolve_accounts(
        self, user_ids: Iterable[str], force_refresh: bool = False
    ) -> Dict[str, DirectoryIdentity]:
        """
        Resolve user ids to identities.

        Args:
            user_ids: Ids to resolve; duplicates are ignored.
            force_refresh: Treat every requested id as missing from the cache.

        Returns:
            Mapping of user id to identity, in first-seen order.

        Raises:
            DecodingError: The batch response could not be decoded. No partial
                result is returned.
        """
        ordered = dedupe_preserving_order(user_ids)
        if not ordered:
            return {}

        cached = {} if force_refresh else self.cache.get_many(ordered)
        missing = [user_id for user_id in ordered if user_id not in cached]

        fetched: Dict[str, DirectoryIdentity] = {}
        if missing:
            logger.debug(
                f"Directory lookup for {len(missing)} ids "
                f"(cached={len(cached)}, force_refresh={force_refresh})"
            )
            raw = await self.transport.request(
                LOOKUP_PATH,
                method="POST",
                json_body=DirectoryLookupRequest(user_ids=missing),
            )
            rows = decode_identity_rows(raw, "directory lookup response")
            fetched = {row.user_id: row for row in rows}
            self._merge(fetched)

        resolved: Dict[str, DirectoryIdentity] = {}
        for user_id in ordered:
            identity = fetched.get(user_id) or cached.get(user_id)
            if identity is None and user_id in self.cache:
                identity = self.cache.get(user_id)
            if identity is not None:
                resolved[user_id] = identity
        return resolved

    async def search(self, query: str) -> List[DirectoryIdentity]:
        q = (query or "").strip()
        if not q:
            return []
        raw = await self.transport.request(
            SEARCH_PATH, method="POST", json_body=DirectorySearchRequest(q=q)
        )
        results = decode_identity_rows(raw, "directory search response")
        logger.info(f"Directory search returned {len(results)} rows")
        return results

    async def upsert_self(
        self,
        user_id: str,
        display_name: str,
        account_handle: Optional[str] = None,
        lookup_enabled: bool = True,
        location: Optional[str] = None,
    ) -> DirectoryIdentity:
        name = (display_name or "").strip()
        if not name:
            raise ValidationError("display_name", display_name, "must not be empty")

        handle = sanitize_account_handle(account_handle)
        place = sanitize_location(location)
        if account_handle and handle is None:
            logger.info(f"Dropping invalid account handle for {user_id}")

        await self.transport.request(
            UPSERT_PATH,
            method="POST",
            json_body=DirectoryUpsert(
                user_id=user_id,
                display_name=name,
                account_id=handle,
                lookup_enabled=lookup_enabled,
                location=place,
            ),
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

        existing = self.cache.snapshot().get(user_id)
        identity = DirectoryIdentity(
            user_id=user_id,
            account_handle=handle,
            display_name=name,
            location=place,
            avatar_key=existing.avatar_key if existing else None,
        )
        self._merge({user_id: identity})
        logger.info(f"Directory row upserted for {user_id}")
        return identity

    async def update_self_avatar_key(self, user_id: str, avatar_key: Optional[str]) -> None:
        await self.transport.request(
            DIRECTORY_PATH,
            method="PATCH",
            query=[("user_id", f"eq.{user_id}")],
            json_body=AvatarKeyPatch(avatar_key=avatar_key),
            headers={"Prefer": "return=minimal"},
        )

        existing = self.cache.snapshot().get(user_id)
        if existing is not None:
            self._merge({user_id: existing.model_copy(update={"avatar_key": avatar_key})})
        logger.info(f"Avatar key updated for {user_id}")

    def display_name_for(self, user_id: str) -> str:
        identity = self.cache.snapshot().get(user_id)
        if identity is not None and identity.display_name:
            return identity.display_name
        return user_id

    def _merge(self, accounts: Mapping[str, DirectoryIdentity]) -> None:
        if not accounts:
            return
        self.cache.merge(accounts)
        if self.consumer is not None:
            self.consumer.merge_directory_accounts(accounts)
