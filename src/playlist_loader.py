"""
Playlist origin fetch and the ingestion pipeline (parse -> merge -> index).

The cache is an explicit object owned by the caller; nothing here keeps
process-wide playlist state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from channel_index import ChannelIndex
from channel_merger import normalize
from config import settings
from m3u_parser import parse_playlist
from models import Channel, Stream

logger = logging.getLogger(__name__)


class PlaylistUnavailableError(Exception):
    """The playlist origin could not be fetched."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Playlist unavailable at {url}: {reason}")
        self.url = url
        self.reason = reason


@dataclass
class IngestedPlaylist:
    channels: List[Channel]
    streams: List[Stream]
    index: ChannelIndex
    entry_count: int
    source_url: Optional[str] = None


@dataclass
class PlaylistCache:
    data: Optional[IngestedPlaylist] = None
    fetched_at: Optional[datetime] = None

    def store(self, data: IngestedPlaylist):
        self.data = data
        self.fetched_at = datetime.now(timezone.utc)

    def invalidate(self):
        self.data = None
        self.fetched_at = None

    def age_seconds(self) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return (datetime.now(timezone.utc) - self.fetched_at).total_seconds()

    def is_fresh(self, ttl_seconds: float) -> bool:
        age = self.age_seconds()
        return self.data is not None and age is not None and age < ttl_seconds


def ingest_playlist(text: str, source_url: Optional[str] = None) -> IngestedPlaylist:
    """Run the full pipeline over playlist text."""
    entries = parse_playlist(text)
    channels, streams = normalize(entries)
    index = ChannelIndex(channels, streams)
    return IngestedPlaylist(
        channels=channels,
        streams=streams,
        index=index,
        entry_count=len(entries),
        source_url=source_url,
    )


class PlaylistLoader:
    """Fetches playlist text from the configured origin and feeds a PlaylistCache."""

    def __init__(
        self,
        url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        self.url = url or settings.PLAYLIST_URL
        self.timeout = timeout if timeout is not None else settings.PLAYLIST_FETCH_TIMEOUT
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            max_redirects=10,
        )
        self._lock = asyncio.Lock()

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    async def fetch_text(self) -> str:
        logger.info(f"Fetching playlist from {self.url}")
        try:
            response = await self.http_client.get(
                self.url, headers={'User-Agent': settings.DEFAULT_USER_AGENT})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PlaylistUnavailableError(
                self.url, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise PlaylistUnavailableError(self.url, str(e) or type(e).__name__) from e
        return response.text

    async def load(self, cache: PlaylistCache, force: bool = False) -> IngestedPlaylist:
        """Return the cached playlist, refetching when stale or forced.

        Raises PlaylistUnavailableError when the origin can't be reached; the
        cache is left untouched in that case so callers may fall back to it.
        """
        async with self._lock:
            if not force and cache.is_fresh(settings.PLAYLIST_CACHE_TTL):
                return cache.data

            text = await self.fetch_text()
            data = ingest_playlist(text, source_url=self.url)
            cache.store(data)
            logger.info(
                f"Ingested playlist: {data.entry_count} entries, {len(data.channels)} channels, "
                f"{len(data.streams)} streams")
            return data
