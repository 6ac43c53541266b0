"""
HTTP Transport Provider

Single configurable aiohttp client for the REST + storage backend. It builds
URLs from the configured base, injects the API key and bearer headers,
classifies responses, and performs at most one authenticated retry when the
backend answers 401/403 and an auth-challenge callback can refresh the session.
It also carries the two storage calls that need URL handling of their own:
object upload and signed-URL minting.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit

import aiohttp
from pydantic import BaseModel

from core.config import BackendSettings, SessionTokenStore
from core.exceptions import (
    DecodingError,
    EncodingError,
    HTTPStatusError,
    InvalidURLError,
    NotConfiguredError,
    TransportError,
)
from core.logging_config import get_logger
from core.models import SignObjectRequest

logger = get_logger(__name__)

QueryItems = List[Tuple[str, str]]
AuthChallenge = Callable[[], Awaitable[bool]]

STORAGE_PREFIX = "/storage/v1"
SIGNED_URL_KEYS = ("signedURL", "signedUrl", "signed_url", "url")
QUERY_SAFE_CHARS = "*,.:()"


def split_legacy_path(path: str) -> Tuple[str, QueryItems]:
    """Split "resource?a=b" into ("resource", [("a", "b")])"""
    if "?" not in path:
        return path, []
    bare, _, query = path.partition("?")
    return bare, parse_qsl(query, keep_blank_values=True)


def merge_query_items(legacy: QueryItems, explicit: Optional[Sequence[Tuple[str, str]]]) -> QueryItems:
    """Caller-supplied items win over legacy items with the same name."""
    if explicit is None:
        return list(legacy)
    explicit = [(str(k), str(v)) for k, v in explicit]
    overridden = {name for name, _ in explicit}
    return [item for item in legacy if item[0] not in overridden] + explicit


def encode_object_path(path: str) -> str:
    return quote(path.strip("/"), safe="/")


class HTTPTransport:
    """aiohttp-backed transport for the REST + storage backend"""

    def __init__(
        self,
        settings: BackendSettings,
        tokens: Optional[SessionTokenStore] = None,
        auth_challenge: Optional[AuthChallenge] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = settings.base_url
        self.api_key = settings.api_key
        self.timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)
        self.tokens = tokens or SessionTokenStore(access_token=settings.access_token)
        self._auth_challenge = auth_challenge
        self._session = session
        self._owns_session = session is None

    def configure(self, base_url: Optional[str], api_key: Optional[str]) -> None:
        self.base_url = base_url
        self.api_key = api_key
        logger.info(
            f"Transport configured base_url={base_url} api_key={'•••' if api_key else None}"
        )

    def set_auth_challenge(self, callback: Optional[AuthChallenge]) -> None:
        self._auth_challenge = callback

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)

    # ------------------------------------------------------------------
    # URL and header construction
    # ------------------------------------------------------------------

    def build_url(self, path: str, query: Optional[Sequence[Tuple[str, str]]] = None) -> str:
        if not self.base_url:
            raise NotConfiguredError()

        bare_path, legacy_items = split_legacy_path(path)
        items = merge_query_items(legacy_items, query)

        if any(ch.isspace() for ch in bare_path):
            raise InvalidURLError(path, "path contains whitespace")

        url = f"{self.base_url.rstrip('/')}/{bare_path.lstrip('/')}"
        if items:
            url += "?" + urlencode(items, quote_via=quote, safe=QUERY_SAFE_CHARS)

        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise InvalidURLError(path, f"resolved to unusable URL {url}")
        return url

    def build_headers(
        self,
        extra: Optional[Mapping[str, str]] = None,
        has_json_body: bool = False,
        with_credentials: bool = True,
    ) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if has_json_body:
            headers["Content-Type"] = "application/json"
        if with_credentials and self.api_key:
            headers["apikey"] = self.api_key
        if with_credentials and self.tokens.access_token:
            headers["Authorization"] = f"Bearer {self.tokens.access_token}"

        for key, value in (extra or {}).items():
            for existing in [k for k in headers if k.lower() == key.lower()]:
                del headers[existing]
            headers[key] = value
        return headers

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        path: str,
        method: str = "GET",
        query: Optional[Sequence[Tuple[str, str]]] = None,
        json_body: Any = None,
        body: Optional[bytes] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> bytes:
        """
        Perform one logical call and return the response body.

        Raises:
            NotConfiguredError: No base URL is configured; nothing is sent.
            InvalidURLError: The path/query cannot form a valid URL.
            EncodingError: The JSON body cannot be serialized.
            HTTPStatusError: The backend answered outside [200, 300).
            TransportError: The backend could not be reached.
        """
        url = self.build_url(path, query)
        data = body
        if json_body is not None:
            data = self._encode_json(json_body, path)

        return await self._perform(method, url, data, headers, json_body is not None)

    async def fetch_absolute(self, url: str) -> bytes:
        """
        GET an absolute URL such as a signed storage URL. Credentials are only
        attached when the URL points at the configured backend.
        """
        return await self._perform("GET", url, None, None, False, self.is_backend_url(url))

    def is_backend_url(self, url: str) -> bool:
        if not self.base_url:
            return False
        base = self.base_url.rstrip("/")
        return url == base or url.startswith(base + "/")

    async def _perform(
        self,
        method: str,
        url: str,
        data: Optional[bytes],
        headers: Optional[Mapping[str, str]],
        has_json_body: bool,
        with_credentials: bool = True,
    ) -> bytes:
        status, payload = await self._send(
            method, url, self.build_headers(headers, has_json_body, with_credentials), data
        )

        if status in (401, 403) and with_credentials and self._auth_challenge is not None:
            logger.info(f"{method} {url} -> {status}, attempting auth challenge")
            refreshed = False
            try:
                refreshed = await self._auth_challenge()
            except Exception as e:
                logger.warning(f"Auth challenge callback failed: {e}")
            if refreshed:
                status, payload = await self._send(
                    method, url, self.build_headers(headers, has_json_body), data
                )

        if 200 <= status < 300:
            logger.debug(f"{method} {url} -> {status} ({len(payload)} bytes)")
            return payload

        logger.warning(f"{method} {url} -> {status}")
        raise HTTPStatusError(status, payload)

    async def _send(
        self, method: str, url: str, headers: Dict[str, str], data: Optional[bytes]
    ) -> Tuple[int, bytes]:
        session = self._get_session()
        try:
            async with session.request(method, url, headers=headers, data=data) as response:
                return response.status, await response.read()
        except asyncio.TimeoutError:
            raise TransportError(url, "request timed out")
        except aiohttp.ClientError as e:
            raise TransportError(url, str(e) or type(e).__name__)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def _encode_json(value: Any, what: str) -> bytes:
        try:
            if isinstance(value, BaseModel):
                return value.model_dump_json().encode("utf-8")
            return json.dumps(value).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise EncodingError(f"request body for {what}", str(e))

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def upload_object(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        await self.request(
            f"storage/v1/object/{bucket}/{encode_object_path(path)}",
            method="POST",
            body=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")

    async def create_signed_object_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        what = f"signed URL for {bucket}/{path}"
        raw = await self.request(
            f"storage/v1/object/sign/{bucket}/{encode_object_path(path)}",
            method="POST",
            json_body=SignObjectRequest(expiresIn=ttl_seconds),
        )
        try:
            decoded = json.loads(raw)
        except ValueError as e:
            raise DecodingError(what, str(e))
        if not isinstance(decoded, dict):
            raise DecodingError(what, "response is not an object")

        signed = next(
            (decoded[key] for key in SIGNED_URL_KEYS if isinstance(decoded.get(key), str) and decoded[key]),
            None,
        )
        if signed is None:
            raise DecodingError(what, "no signed URL field in response")
        return self.normalize_signed_url(signed)

    def normalize_signed_url(self, signed: str) -> str:
        """
        Turn whatever the sign endpoint returned into one absolute URL.

        The endpoint may return an absolute URL, a path rooted at "/object/..."
        that is missing the storage prefix, or a bare relative path. The value
        is appended verbatim since its query token is already encoded.
        """
        if signed.startswith(("http://", "https://")):
            return signed
        if not self.base_url:
            raise NotConfiguredError()

        base = self.base_url.rstrip("/")
        if signed.startswith(STORAGE_PREFIX + "/"):
            return base + signed
        if signed.startswith("/"):
            return base + STORAGE_PREFIX + signed
        if signed.startswith(STORAGE_PREFIX.lstrip("/") + "/"):
            return f"{base}/{signed}"
        return f"{base}{STORAGE_PREFIX}/{signed}"
