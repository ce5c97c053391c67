"""
Normalizes parsed playlist entries into channels and streams.

Entries sharing a trimmed display name are folded into one Channel; every entry
still yields its own Stream pointing at that channel.
"""

import hashlib
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from config import settings
from models import Channel, PlaylistEntry, Stream

logger = logging.getLogger(__name__)


def _url_hash(url: str) -> str:
    return hashlib.md5(url.encode()).hexdigest()[:8]


def _slug(name: str) -> str:
    return re.sub(r'\s+', '_', name)[:20]


def make_channel_id(index: int, name: str, url: str) -> str:
    """Stable channel id from entry position, trimmed name and first URL."""
    return f"ch_{index}_{_slug(name.strip())}_{_url_hash(url)}"


def _host(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def is_trusted_logo(url: str, trusted_hosts: Iterable[str]) -> bool:
    host = _host(url)
    if not host:
        return False
    for trusted in trusted_hosts:
        trusted = trusted.lower()
        if host == trusted or host.endswith("." + trusted):
            return True
    return False


def _should_replace_logo(existing: str, incoming: str, trusted_hosts: Sequence[str]) -> bool:
    if not incoming:
        return False
    if not existing:
        return True
    return is_trusted_logo(incoming, trusted_hosts) and not is_trusted_logo(existing, trusted_hosts)


def _new_channel(channel_id: str, name: str, entry: PlaylistEntry) -> Channel:
    channel = Channel(id=channel_id, name=name)
    _fold_attributes(channel, entry)
    channel.logo_url = entry.logo or ""
    channel.country = entry.country
    return channel


def _fold_attributes(channel: Channel, entry: PlaylistEntry):
    if entry.group:
        channel.categories.add(entry.group)
    if entry.preferred_name:
        channel.alternate_names.add(entry.preferred_name)
    if entry.language:
        channel.languages.add(entry.language)


def normalize(
    entries: Sequence[PlaylistEntry],
    trusted_logo_hosts: Optional[Sequence[str]] = None
) -> Tuple[List[Channel], List[Stream]]:
    """Merge entries into (channels, streams).

    Channels come out in first-seen order of their merge group, streams in
    original entry order.
    """
    trusted = list(trusted_logo_hosts) if trusted_logo_hosts is not None else settings.TRUSTED_LOGO_HOSTS
    by_name: Dict[str, Channel] = {}
    streams: List[Stream] = []

    for index, entry in enumerate(entries):
        name = (entry.name or "").strip()
        channel = by_name.get(name)

        if channel is None:
            if not name:
                logger.debug(f"Entry #{index} has no display name, grouping under empty name")
            channel = _new_channel(make_channel_id(index, name, entry.url), name, entry)
            by_name[name] = channel
        else:
            _fold_attributes(channel, entry)
            incoming_logo = entry.logo or ""
            if _should_replace_logo(channel.logo_url, incoming_logo, trusted):
                channel.logo_url = incoming_logo
            if not channel.country and entry.country:
                channel.country = entry.country

        streams.append(Stream(
            channel_id=channel.id,
            url=entry.url,
            http_referrer=entry.referrer,
            user_agent=entry.user_agent,
        ))

    channels = list(by_name.values())
    logger.info(
        f"Merged {len(entries)} entries into {len(channels)} channels")
    return channels, streams
