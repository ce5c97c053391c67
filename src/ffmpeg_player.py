"""
FFmpeg-backed player capability.

Attaching a source starts one ffmpeg process that decodes the input into the
null muxer. The first decoded frame reported on the progress pipe is the
"playable" signal; stderr output and the exit code are classified into
FailureKind values for the failover controller.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from config import settings
from models import FailureKind, Stream

logger = logging.getLogger(__name__)


# Ordered: the first matching group decides the failure class
NETWORK_ERROR_PATTERNS = [
    'failed to resolve hostname',
    'connection refused',
    'connection timed out',
    'connection reset',
    'network is unreachable',
    'server returned 4',  # Matches 403, 404, etc.
    'server returned 5',  # Matches 500, 502, 503, etc.
    'input/output error',
    'i/o error',
    'http error',
    'end of file',
]

UNSUPPORTED_FORMAT_PATTERNS = [
    'protocol not found',
    'unsupported',
    'unknown format',
    'no decoder',
    'decoder not found',
]

DECODE_ERROR_PATTERNS = [
    'invalid data found',
    'could not find codec parameters',
    'error while decoding',
    'decoding error',
    'corrupt',
]

# Transient HLS problems that deserve one in-place retry
MANIFEST_ERROR_PATTERNS = [
    'failed to open segment',
    'failed to reload playlist',
    'keepalive request failed',
]

# Patterns to skip in FFmpeg output (verbose/noisy messages)
SKIP_LOG_PATTERNS = [
    'frame=',
    'fps=',
    'bitrate=',
    'speed=',
    'opening',
]


def classify_ffmpeg_error(text: str) -> Optional[FailureKind]:
    """Map ffmpeg/ffprobe diagnostic text to a failure class, None when unrecognized."""
    lower = text.lower()
    for patterns, kind in (
        (NETWORK_ERROR_PATTERNS, FailureKind.NETWORK),
        (UNSUPPORTED_FORMAT_PATTERNS, FailureKind.UNSUPPORTED_FORMAT),
        (DECODE_ERROR_PATTERNS, FailureKind.DECODE),
        (MANIFEST_ERROR_PATTERNS, FailureKind.MANIFEST),
    ):
        if any(pattern in lower for pattern in patterns):
            return kind
    return None


def is_network_input(url: str) -> bool:
    return '://' in url and not url.startswith('file://')


def is_hls_url(url: str) -> bool:
    return '.m3u8' in url.lower()


def build_input_args(url: str, user_agent: Optional[str] = None, referrer: Optional[str] = None) -> List[str]:
    """Input options placed before -i: per-source headers and HLS protocol options.

    Headers are only meaningful for network inputs and are dropped otherwise.
    """
    args: List[str] = []
    if is_network_input(url):
        if user_agent:
            args.extend(["-user_agent", user_agent])
        if referrer:
            args.extend(["-headers", f"Referer: {referrer}\r\n"])
    if is_hls_url(url):
        args.extend(["-protocol_whitelist", "file,http,https,tcp,tls,crypto"])
    return args


@dataclass
class PlayerEvent:
    kind: str  # "playable" or "error"
    failure: Optional[FailureKind] = None
    detail: Optional[str] = None

    @classmethod
    def playable(cls) -> "PlayerEvent":
        return cls(kind="playable")

    @classmethod
    def error(cls, failure: FailureKind, detail: Optional[str] = None) -> "PlayerEvent":
        return cls(kind="error", failure=failure, detail=detail)


EventCallback = Callable[[PlayerEvent], Awaitable[None]]


class PlayerHandle:
    """One attached source. Closing it must release every decoding resource."""

    async def recover(self):
        raise NotImplementedError

    async def pause(self):
        raise NotImplementedError

    async def resume(self):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class MediaPlayer:
    """Opens sources; each open() yields a handle reporting through on_event."""

    async def open(self, stream: Stream, on_event: EventCallback) -> PlayerHandle:
        raise NotImplementedError


class FFmpegPlayerHandle(PlayerHandle):

    def __init__(self, stream: Stream, on_event: EventCallback, ffmpeg_path: Optional[str] = None):
        self.stream = stream
        self.on_event = on_event
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.process: Optional[asyncio.subprocess.Process] = None
        self.error_message: Optional[str] = None
        self._failure: Optional[FailureKind] = None
        self._playable_sent = False
        self._closing = False
        self._tasks: List[asyncio.Task] = []

    def build_command(self) -> List[str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-nostats", "-loglevel", "warning"]
        cmd.extend(build_input_args(
            self.stream.url,
            self.stream.user_agent or settings.DEFAULT_USER_AGENT,
            self.stream.http_referrer,
        ))
        cmd.extend([
            "-reconnect", "1",
            "-reconnect_streamed", "1",
            "-reconnect_delay_max", "2",
        ])
        cmd.extend(["-i", self.stream.url])
        # Video + audio only; '?' keeps audio-only and video-only inputs valid
        cmd.extend(["-map", "0:v:0?", "-map", "0:a:0?"])
        cmd.extend(["-progress", "pipe:1", "-f", "null", "-"])
        return cmd

    async def start(self):
        cmd = self.build_command()
        logger.info(f"Starting player: {' '.join(cmd)}")
        self._playable_sent = False
        self._failure = None
        self.process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        process = self.process
        self._tasks = [
            asyncio.create_task(self._read_progress(process)),
            asyncio.create_task(self._log_stderr(process)),
            asyncio.create_task(self._monitor_process(process)),
        ]

    async def _emit(self, event: PlayerEvent):
        if self._closing:
            return
        try:
            await self.on_event(event)
        except Exception as e:
            logger.error(f"Error delivering player event for {self.stream.url}: {e}")

    async def _read_progress(self, process: asyncio.subprocess.Process):
        """Watch ffmpeg -progress output for the first decoded frame."""
        if not process.stdout:
            return
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                key, _, value = line.decode('utf-8', errors='ignore').strip().partition('=')
                if self._playable_sent or process is not self.process:
                    continue
                if (key == "frame" and value.isdigit() and int(value) > 0) or \
                        (key == "out_time_us" and value.lstrip('-').isdigit() and int(value) > 0):
                    self._playable_sent = True
                    await self._emit(PlayerEvent.playable())
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error reading ffmpeg progress for {self.stream.url}: {e}")

    async def _log_stderr(self, process: asyncio.subprocess.Process):
        """Monitor FFmpeg stderr, remembering the most specific failure seen."""
        if not process.stderr:
            return

        buf = b""
        try:
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break

                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    line_str = line.decode('utf-8', errors='ignore').strip()
                    if not line_str:
                        continue
                    if process is not self.process:
                        return
                    failure = classify_ffmpeg_error(line_str)
                    if failure is None:
                        line_lower = line_str.lower()
                        if not any(pattern in line_lower for pattern in SKIP_LOG_PATTERNS):
                            logger.debug(f"FFmpeg [{self.stream.url}]: {line_str}")
                        continue
                    logger.warning(f"FFmpeg [{self.stream.url}]: {line_str}")
                    if self._failure is None:
                        self._failure = failure
                        self.error_message = line_str
                        if failure == FailureKind.MANIFEST:
                            # ffmpeg keeps running; let the controller decide on recovery
                            await self._emit(PlayerEvent.error(failure, line_str))

                if len(buf) > 1024 * 1024:
                    buf = b""
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error reading FFmpeg stderr for {self.stream.url}: {e}")

    async def _monitor_process(self, process: asyncio.subprocess.Process):
        try:
            exit_code = await process.wait()
            if self._closing or process is not self.process:
                return
            if exit_code == 0:
                # Input ended; a live source should not end on its own
                detail = "Stream ended"
                failure = FailureKind.NETWORK
            else:
                detail = self.error_message or f"FFmpeg exited with code {exit_code}"
                failure = self._failure or classify_ffmpeg_error(detail) or FailureKind.UNKNOWN
                if failure == FailureKind.MANIFEST:
                    # The process is gone, this is no longer recoverable in place
                    failure = FailureKind.NETWORK
            await self._emit(PlayerEvent.error(failure, detail))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error monitoring player for {self.stream.url}: {e}")

    async def _stop_process(self):
        self._closing = True
        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Player for {self.stream.url} did not terminate gracefully, killing")
                    self.process.kill()
                    await self.process.wait()
            except ProcessLookupError:
                pass  # Process already dead

        current = asyncio.current_task()
        for task in self._tasks:
            # The reader that delivered the triggering event finishes on its own
            if task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks = []

    async def recover(self):
        """Restart decoding of the same source in place."""
        logger.info(f"Recovering player for {self.stream.url}")
        await self._stop_process()
        self._closing = False
        self.error_message = None
        await self.start()

    async def pause(self):
        if self.process and self.process.returncode is None:
            self.process.send_signal(signal.SIGSTOP)

    async def resume(self):
        if self.process and self.process.returncode is None:
            self.process.send_signal(signal.SIGCONT)

    async def close(self):
        if self.process and self.process.returncode is None:
            # A stopped process can't act on SIGTERM
            try:
                self.process.send_signal(signal.SIGCONT)
            except ProcessLookupError:
                pass
        await self._stop_process()
        logger.info(f"Player for {self.stream.url} closed")


class FFmpegPlayer(MediaPlayer):

    def __init__(self, ffmpeg_path: Optional[str] = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH

    async def open(self, stream: Stream, on_event: EventCallback) -> PlayerHandle:
        handle = FFmpegPlayerHandle(stream, on_event, ffmpeg_path=self.ffmpeg_path)
        await handle.start()
        return handle
