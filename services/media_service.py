"""
Media Service.

Cache-aside access to attachment media stored in the backend bucket.

Key Components:
- `signed_url`: mints a short-lived signed URL for a storage object and keeps
  it in the `SignedURLCache` slightly shorter than the backend lets it live, so
  a cached URL is never handed out right as it expires.
- `load`: downloads an object through its signed URL and keeps the decoded
  result in the `DecodedMediaCache` (LRU, bounded by entry count and memory).
"""

from typing import Any, Callable, Dict, Optional

from core.cache import DecodedMediaCache, SignedURLCache, storage_key
from core.exceptions import DecodingError
from core.logging_config import get_logger
from providers.http_transport import HTTPTransport

logger = get_logger(__name__)

SIGNED_URL_SAFETY_MARGIN_SECONDS = 5

Decoder = Callable[[bytes], Any]


class MediaService:
    """Signed URL minting and decoded media loading with caching"""

    def __init__(
        self,
        transport: HTTPTransport,
        signed_cache: Optional[SignedURLCache] = None,
        media_cache: Optional[DecodedMediaCache] = None,
        default_ttl_seconds: int = 60,
    ):
        self.transport = transport
        self.signed_cache = signed_cache if signed_cache is not None else SignedURLCache()
        self.media_cache = media_cache if media_cache is not None else DecodedMediaCache()
        self.default_ttl_seconds = default_ttl_seconds

    async def signed_url(self, bucket: str, path: str, ttl_seconds: Optional[int] = None) -> str:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        key = storage_key(bucket, path)

        cached = await self.signed_cache.get(key)
        if cached is not None:
            logger.debug(f"Signed URL cache hit for {key}")
            return cached

        url = await self.transport.create_signed_object_url(bucket, path, ttl)
        await self.signed_cache.set(key, url, ttl=max(ttl - SIGNED_URL_SAFETY_MARGIN_SECONDS, 0))
        logger.debug(f"Signed URL minted for {key} (ttl={ttl}s)")
        return url

    async def load(self, bucket: str, path: str, decoder: Optional[Decoder] = None) -> Any:
        """
        Return the decoded media for a storage object.

        Args:
            bucket: Storage bucket name.
            path: Object path inside the bucket.
            decoder: Turns raw bytes into the cached value. Raw bytes are
                cached when omitted.

        Raises:
            DecodingError: If the decoder rejects the downloaded bytes.
        """
        key = storage_key(bucket, path)
        cached = await self.media_cache.get(key)
        if cached is not None:
            return cached

        url = await self.signed_url(bucket, path)
        raw = await self.transport.fetch_absolute(url)

        if decoder is None:
            value: Any = raw
        else:
            try:
                value = decoder(raw)
            except Exception as e:
                raise DecodingError(f"media {key}", str(e))

        await self.media_cache.set(key, value)
        logger.info(f"Loaded media {key} ({len(raw)} bytes)")
        return value

    async def stats(self) -> Dict[str, Any]:
        return {
            "signed_urls": await self.signed_cache.stats(),
            "decoded_media": await self.media_cache.stats(),
        }
