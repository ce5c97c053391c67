"""
Single-source reachability probe.

A probe first attempts a real media load with ffprobe (many origins answer the
container request with 200 and then fail to decode). For HLS manifests a
manifest-level fetch and parse with the m3u8 library is the fallback signal.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
import m3u8

from config import settings
from ffmpeg_player import build_input_args, classify_ffmpeg_error, is_hls_url
from models import FailureKind, ValidationResult, ValidationStatus, ValidationTarget

logger = logging.getLogger(__name__)

PLAYABLE_CODEC_TYPES = ("video", "audio")


@dataclass
class CheckOutcome:
    success: bool
    failure: Optional[FailureKind] = None
    detail: Optional[str] = None


def _last_lines(data: bytes, limit: int = 300) -> str:
    text = data.decode('utf-8', errors='ignore').strip()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return " | ".join(lines[-3:])[:limit]


class StreamProber:
    """Determines whether one source is playable within a deadline."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        ffprobe_path: Optional[str] = None
    ):
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=10,
            limits=httpx.Limits(
                max_keepalive_connections=10,
                max_connections=50,
                keepalive_expiry=30.0
            )
        )

    async def close(self):
        if self._owns_client:
            await self.http_client.aclose()

    def _headers(self, target: ValidationTarget) -> Dict[str, str]:
        headers = {
            'User-Agent': target.user_agent or settings.DEFAULT_USER_AGENT,
            'Accept': '*/*',
        }
        if target.http_referrer:
            headers['Referer'] = target.http_referrer
        return headers

    def build_ffprobe_command(self, target: ValidationTarget) -> List[str]:
        cmd = [self.ffprobe_path, "-v", "error", "-hide_banner"]
        cmd.extend(build_input_args(
            target.url,
            target.user_agent or settings.DEFAULT_USER_AGENT,
            target.http_referrer,
        ))
        cmd.extend([
            "-show_entries", "stream=codec_type,codec_name",
            "-of", "json",
            "-i", target.url,
        ])
        return cmd

    async def check_media(self, target: ValidationTarget) -> CheckOutcome:
        """Media-load attempt. The ffprobe process is reaped on every exit path."""
        process = await asyncio.create_subprocess_exec(
            *self.build_ffprobe_command(target),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await process.communicate()
        finally:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if process.returncode != 0:
            detail = _last_lines(stderr) or f"ffprobe exited with code {process.returncode}"
            return CheckOutcome(False, classify_ffmpeg_error(detail) or FailureKind.UNKNOWN, detail)

        try:
            data = json.loads(stdout.decode('utf-8', errors='ignore') or "{}")
        except json.JSONDecodeError:
            return CheckOutcome(False, FailureKind.DECODE, "Unreadable ffprobe output")

        codec_types = {s.get("codec_type") for s in data.get("streams", [])}
        if codec_types.intersection(PLAYABLE_CODEC_TYPES):
            return CheckOutcome(True)
        return CheckOutcome(False, FailureKind.UNSUPPORTED_FORMAT, "No audio or video stream found")

    async def check_manifest(self, target: ValidationTarget) -> CheckOutcome:
        """Fetch and parse an HLS manifest; any variant or segment counts as reachable."""
        try:
            response = await self.http_client.get(target.url, headers=self._headers(target))
        except httpx.HTTPError as e:
            return CheckOutcome(False, FailureKind.NETWORK, str(e) or type(e).__name__)

        if response.status_code >= 400:
            return CheckOutcome(False, FailureKind.NETWORK, f"Manifest request returned HTTP {response.status_code}")

        try:
            playlist = m3u8.loads(response.text, uri=str(response.url))
        except Exception as e:
            return CheckOutcome(False, FailureKind.MANIFEST, f"Invalid manifest: {e}")

        if playlist.is_variant and playlist.playlists:
            return CheckOutcome(True)
        if playlist.segments:
            return CheckOutcome(True)
        return CheckOutcome(False, FailureKind.MANIFEST, "Manifest has no variants or segments")

    async def _run_checks(self, target: ValidationTarget) -> CheckOutcome:
        media = await self.check_media(target)
        if media.success or not is_hls_url(target.url):
            return media

        manifest = await self.check_manifest(target)
        if manifest.success:
            return manifest
        # Keep the more specific of the two failures
        if media.failure in (None, FailureKind.UNKNOWN):
            return manifest
        return media

    async def probe(self, target: ValidationTarget, timeout_ms: int) -> ValidationResult:
        """Probe one target. Never raises for probe-level failures."""
        started = time.monotonic()

        def result(status: ValidationStatus, detail: Optional[str] = None,
                   failure: Optional[FailureKind] = None) -> ValidationResult:
            return ValidationResult(
                url=target.url,
                channel_id=target.channel_id,
                channel_name=target.channel_name,
                status=status,
                error_detail=detail,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                failure=failure,
            )

        try:
            outcome = await asyncio.wait_for(self._run_checks(target), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            logger.debug(f"Probe timed out after {timeout_ms}ms: {target.url}")
            return result(ValidationStatus.TIMEOUT, f"Timed out after {timeout_ms}ms", FailureKind.TIMEOUT)
        except FileNotFoundError as e:
            logger.warning(f"ffprobe executable not available: {e}")
            return result(ValidationStatus.ERROR, f"ffprobe not available: {e}", FailureKind.UNKNOWN)
        except Exception as e:
            logger.warning(f"Probe error for {target.url}: {e}")
            return result(ValidationStatus.ERROR, str(e) or type(e).__name__, FailureKind.UNKNOWN)

        if outcome.success:
            return result(ValidationStatus.SUCCESS)
        return result(ValidationStatus.FAILED, outcome.detail, outcome.failure)
