"""
Lookup from channel id to its ordered candidate streams.
"""

from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from models import Channel, Stream, ValidationTarget


class ChannelIndex:
    """Read-only index built from a (channels, streams) pair.

    Candidate order is first-seen playlist order and doubles as priority order
    for validation and playback failover. Rebuild to change it.
    """

    def __init__(self, channels: Sequence[Channel], streams: Sequence[Stream]):
        self._channels: Dict[str, Channel] = {c.id: c for c in channels}
        grouped: Dict[str, List[Stream]] = {c.id: [] for c in channels}
        for stream in streams:
            grouped.setdefault(stream.channel_id, []).append(stream)
        self._streams: Dict[str, Tuple[Stream, ...]] = {
            channel_id: tuple(items) for channel_id, items in grouped.items()
        }
        self._stream_count = len(streams)

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels

    def __iter__(self) -> Iterator[Channel]:
        return iter(self._channels.values())

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    @property
    def stream_count(self) -> int:
        return self._stream_count

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        return self._channels.get(channel_id)

    def candidates(self, channel_id: str) -> Tuple[Stream, ...]:
        return self._streams.get(channel_id, ())

    def categories(self) -> List[str]:
        found = set()
        for channel in self._channels.values():
            found.update(channel.categories)
        return sorted(found)

    def channels_in_category(self, category: str) -> List[Channel]:
        return [c for c in self._channels.values() if category in c.categories]

    def countries(self) -> List[str]:
        return sorted({c.country.upper() for c in self._channels.values() if c.country})

    def channels_in_country(self, code: str) -> List[Channel]:
        """Channels whose country matches ``code``, ignoring case."""
        code = code.strip().lower()
        return [c for c in self._channels.values() if c.country and c.country.lower() == code]

    def _target(self, stream: Stream) -> ValidationTarget:
        channel = self._channels.get(stream.channel_id)
        return ValidationTarget(
            channel_id=stream.channel_id,
            channel_name=channel.name if channel else stream.channel_id,
            url=stream.url,
            user_agent=stream.user_agent,
            http_referrer=stream.http_referrer,
        )

    def _selected_ids(self, channel_ids: Optional[Iterable[str]]) -> List[str]:
        if channel_ids is None:
            return list(self._streams.keys())
        return [cid for cid in channel_ids if cid in self._streams]

    def flat_targets(
        self,
        channel_ids: Optional[Iterable[str]] = None,
        first_only: bool = False
    ) -> List[ValidationTarget]:
        """Every candidate as an independent target, or only each channel's first."""
        targets: List[ValidationTarget] = []
        for channel_id in self._selected_ids(channel_ids):
            streams = self._streams[channel_id]
            if first_only:
                streams = streams[:1]
            targets.extend(self._target(s) for s in streams)
        return targets

    def grouped_targets(
        self,
        channel_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, List[ValidationTarget]]:
        """Channel id -> candidate targets in priority order (channels without streams skipped)."""
        return {
            channel_id: [self._target(s) for s in self._streams[channel_id]]
            for channel_id in self._selected_ids(channel_ids)
            if self._streams[channel_id]
        }
