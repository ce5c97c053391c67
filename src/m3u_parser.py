"""
M3U playlist parser.

Turns extended-M3U text into flat PlaylistEntry records:

    #EXTM3U
    #EXTINF:-1 tvg-id="cctv1" tvg-logo="http://..." group-title="News",CCTV-1
    #EXTVLCOPT:http-user-agent=Mozilla/5.0
    http://example.com/cctv1.m3u8

Malformed input never raises: incomplete records and stray lines are dropped.
"""

import io
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from models import PlaylistEntry

logger = logging.getLogger(__name__)

HEADER = "#EXTM3U"
EXTINF_PREFIX = "#EXTINF:"
EXTVLCOPT_PREFIX = "#EXTVLCOPT:"
EXTGRP_PREFIX = "#EXTGRP:"

# Player options honoured on #EXTVLCOPT lines
VLC_OPTION_KEYS = ("http-user-agent", "http-referrer", "http-referer")


@dataclass
class ExtinfLine:
    duration: str
    attributes: Dict[str, str] = field(default_factory=dict)
    title: str = ""


def _last_unquoted_comma(text: str) -> int:
    """Index of the last comma outside a quoted attribute value, or -1."""
    in_quote = False
    last = -1
    for i, ch in enumerate(text):
        if ch == '"':
            in_quote = not in_quote
        elif ch == ',' and not in_quote:
            last = i
    if in_quote:
        # Unterminated quote, quoting can't be trusted
        return text.rfind(',')
    return last


def _read_duration(text: str) -> Tuple[str, str]:
    text = text.lstrip()
    end = 0
    while end < len(text) and not text[end].isspace():
        end += 1
    token = text[:end]
    if '=' in token:
        # No duration, the line starts straight with attributes
        return "", text
    return token, text[end:]


def _scan_attributes(text: str) -> Dict[str, str]:
    """Scan key="value" pairs. Keys are lower-cased; first occurrence wins."""
    attributes: Dict[str, str] = {}
    i = 0
    n = len(text)
    while i < n:
        while i < n and text[i].isspace():
            i += 1
        start = i
        while i < n and text[i] != '=' and not text[i].isspace():
            i += 1
        key = text[start:i].lower()
        if i >= n or text[i] != '=':
            # Bare token without a value
            i += 1
            continue
        i += 1
        if i < n and text[i] == '"':
            i += 1
            value_start = i
            while i < n and text[i] != '"':
                i += 1
            value = text[value_start:i]
            i += 1
        else:
            value_start = i
            while i < n and not text[i].isspace():
                i += 1
            value = text[value_start:i]
        if key:
            attributes.setdefault(key, value)
    return attributes


def parse_extinf(line: str) -> ExtinfLine:
    """Tokenize one #EXTINF line into duration, attributes and display title.

    The title is whatever follows the last comma of the line, so commas inside
    quoted attribute values never split it.
    """
    body = line[len(EXTINF_PREFIX):] if line.startswith(EXTINF_PREFIX) else line
    split = _last_unquoted_comma(body)
    if split == -1:
        head, title = body, ""
    else:
        head, title = body[:split], body[split + 1:].strip()
    duration, rest = _read_duration(head)
    return ExtinfLine(duration=duration, attributes=_scan_attributes(rest), title=title)


@dataclass
class _OpenRecord:
    name: str
    tags: Dict[str, str]


def _open_record(line: str) -> _OpenRecord:
    extinf = parse_extinf(line)
    name = extinf.title or extinf.attributes.get("tvg-name", "")
    return _OpenRecord(name=name, tags=dict(extinf.attributes))


def _apply_comment(record: _OpenRecord, line: str):
    if line.startswith(EXTVLCOPT_PREFIX):
        key, sep, value = line[len(EXTVLCOPT_PREFIX):].partition('=')
        key = key.strip().lower()
        if sep and key in VLC_OPTION_KEYS and value.strip():
            record.tags.setdefault(key, value.strip())
    elif line.startswith(EXTGRP_PREFIX):
        group = line[len(EXTGRP_PREFIX):].strip()
        if group:
            record.tags.setdefault("group-title", group)


def parse_playlist(text: str) -> List[PlaylistEntry]:
    """Parse playlist text into entries, in file order."""
    entries: List[PlaylistEntry] = []
    record: Optional[_OpenRecord] = None
    dropped = 0
    stray = 0

    for raw_line in io.StringIO(text):
        line = raw_line.strip().lstrip('\ufeff')
        if not line:
            continue
        if line == HEADER or line.startswith(HEADER + " "):
            continue

        if line.startswith(EXTINF_PREFIX):
            if record is not None:
                dropped += 1
            record = _open_record(line)
        elif line.startswith('#'):
            if record is not None:
                _apply_comment(record, line)
        elif record is not None:
            entries.append(PlaylistEntry(name=record.name, url=line, tags=record.tags))
            record = None
        else:
            stray += 1

    if record is not None:
        dropped += 1

    if dropped or stray:
        logger.debug(
            f"Playlist parse: {dropped} records without URL dropped, {stray} stray lines ignored")
    logger.debug(f"Parsed {len(entries)} playlist entries")
    return entries
