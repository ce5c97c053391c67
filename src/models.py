"""
Shared data model for playlist ingestion, validation and playback.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Set


# Canonical attribute name -> accepted spellings on an #EXTINF line.
# Keys are matched case-insensitively; the first spelling present wins.
ATTRIBUTE_ALIASES: Dict[str, tuple] = {
    "tvg_id": ("tvg-id",),
    "preferred_name": ("tvg-name",),
    "logo": ("tvg-logo",),
    "group": ("group-title",),
    "user_agent": ("user-agent", "http-user-agent"),
    "referrer": ("referer", "referrer", "http-referer", "http-referrer"),
    "country": ("tvg-country", "country"),
    "language": ("tvg-language", "language"),
}


@dataclass
class PlaylistEntry:
    """One (metadata, url) pair read from playlist text."""
    name: str
    url: str
    tags: Dict[str, str] = field(default_factory=dict)

    def tag(self, canonical: str) -> Optional[str]:
        for key in ATTRIBUTE_ALIASES.get(canonical, (canonical,)):
            value = self.tags.get(key)
            if value:
                return value
        return None

    @property
    def tvg_id(self) -> Optional[str]:
        return self.tag("tvg_id")

    @property
    def preferred_name(self) -> Optional[str]:
        return self.tag("preferred_name")

    @property
    def logo(self) -> Optional[str]:
        return self.tag("logo")

    @property
    def group(self) -> Optional[str]:
        return self.tag("group")

    @property
    def user_agent(self) -> Optional[str]:
        return self.tag("user_agent")

    @property
    def referrer(self) -> Optional[str]:
        return self.tag("referrer")

    @property
    def country(self) -> Optional[str]:
        return self.tag("country")

    @property
    def language(self) -> Optional[str]:
        return self.tag("language")


@dataclass
class Channel:
    id: str
    name: str
    alternate_names: Set[str] = field(default_factory=set)
    categories: Set[str] = field(default_factory=set)
    logo_url: str = ""
    country: Optional[str] = None
    languages: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "alternate_names": sorted(self.alternate_names),
            "categories": sorted(self.categories),
            "logo_url": self.logo_url,
            "country": self.country,
            "languages": sorted(self.languages),
        }


@dataclass(frozen=True)
class Stream:
    channel_id: str
    url: str
    http_referrer: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "channel_id": self.channel_id,
            "url": self.url,
            "http_referrer": self.http_referrer,
            "user_agent": self.user_agent,
        }


@dataclass(frozen=True)
class ValidationTarget:
    """A single source handed to the reachability prober."""
    channel_id: str
    channel_name: str
    url: str
    user_agent: Optional[str] = None
    http_referrer: Optional[str] = None


class ValidationStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    ERROR = "error"


class FailureKind(str, Enum):
    """Failure classes shared by the prober and the playback controller."""
    NETWORK = "network"
    DECODE = "decode"
    UNSUPPORTED_FORMAT = "unsupported_format"
    # Fatal manifest-protocol failure (HLS playlist could not be loaded/parsed)
    MANIFEST = "manifest"
    # Transient media pipeline error, recoverable in place
    MEDIA = "media"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    UNKNOWN = "unknown"


@dataclass
class ValidationResult:
    url: str
    channel_id: str
    channel_name: str
    status: ValidationStatus
    error_detail: Optional[str] = None
    elapsed_ms: Optional[int] = None
    tested_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc))
    failure: Optional[FailureKind] = None

    @property
    def is_success(self) -> bool:
        return self.status == ValidationStatus.SUCCESS

    def to_export_dict(self) -> Dict:
        return {
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "url": self.url,
            "status": self.status.value,
            "errorDetail": self.error_detail,
            "elapsedMillis": self.elapsed_ms,
            "testedAt": self.tested_at.isoformat(),
        }
