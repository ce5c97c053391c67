"""
Playback failover controller.

A PlaybackSession plays one channel by attaching its candidate streams to a
MediaPlayer one at a time, in priority order. When the attached source fails
it either recovers in place (transient manifest/media errors, once) or tears
the source down and advances to the next candidate after a short delay.

States: idle -> loading -> playing, loading|playing -> failed -> loading(next),
and the terminal exhausted state once no candidate is left.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from config import settings
from ffmpeg_player import MediaPlayer, PlayerEvent, PlayerHandle
from models import FailureKind, Stream

logger = logging.getLogger(__name__)


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


# Failure classes that move on to the next candidate straight away
ADVANCING_FAILURES = {
    FailureKind.NETWORK,
    FailureKind.DECODE,
    FailureKind.UNSUPPORTED_FORMAT,
    FailureKind.TIMEOUT,
    FailureKind.UNKNOWN,
}

# Retried in place before advancing
RECOVERABLE_FAILURES = {
    FailureKind.MANIFEST,
    FailureKind.MEDIA,
}

FAILURE_MESSAGES = {
    FailureKind.NETWORK: "Network error, unable to load the stream",
    FailureKind.DECODE: "Media error, the stream could not be decoded",
    FailureKind.UNSUPPORTED_FORMAT: "Unsupported stream format",
    FailureKind.MANIFEST: "Playlist error",
    FailureKind.MEDIA: "Media error",
    FailureKind.TIMEOUT: "Load timed out",
    FailureKind.ABORTED: "Playback aborted",
    FailureKind.UNKNOWN: "Playback error",
}


@dataclass
class PlaybackEvent:
    """Notification delivered to session listeners on every transition."""
    state: PlaybackState
    index: int
    total: int
    url: Optional[str] = None
    failure: Optional[FailureKind] = None
    message: Optional[str] = None
    paused: bool = False

    @property
    def terminal(self) -> bool:
        return self.state == PlaybackState.EXHAUSTED


@dataclass
class PlaybackAttempt:
    index: int
    url: str
    outcome: str  # playing, failed, skipped, recovering
    detail: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "url": self.url,
            "outcome": self.outcome,
            "detail": self.detail,
            "at": self.at.isoformat(),
        }


Listener = Callable[[PlaybackEvent], Any]


class PlaybackSession:
    """Per-channel failover state machine. Exactly one player handle is attached at a time."""

    def __init__(
        self,
        player: MediaPlayer,
        session_id: Optional[str] = None,
        load_timeout: Optional[float] = None,
        advance_delay: Optional[float] = None,
        recovery_attempts: Optional[int] = None
    ):
        self.player = player
        self.session_id = session_id or uuid.uuid4().hex
        self.load_timeout = load_timeout if load_timeout is not None else settings.FAILOVER_LOAD_TIMEOUT
        self.advance_delay = advance_delay if advance_delay is not None else settings.FAILOVER_ADVANCE_DELAY
        self.recovery_attempts = (
            recovery_attempts if recovery_attempts is not None else settings.FAILOVER_RECOVERY_ATTEMPTS)

        self.state = PlaybackState.IDLE
        self.channel_id: Optional[str] = None
        self.candidates: List[Stream] = []
        self.index = 0
        self.paused = False
        self.message: Optional[str] = None
        self.last_failure: Optional[FailureKind] = None
        self.attempts: List[PlaybackAttempt] = []
        self.handle: Optional[PlayerHandle] = None
        self.created_at = datetime.now(timezone.utc)

        self._generation = 0
        self._recoveries = 0
        self._listeners: List[Listener] = []
        self._load_timer: Optional[asyncio.Task] = None
        self._advance_task: Optional[asyncio.Task] = None
        self._recovery_task: Optional[asyncio.Task] = None

    # Listeners

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, failure: Optional[FailureKind] = None):
        event = PlaybackEvent(
            state=self.state,
            index=self.index,
            total=len(self.candidates),
            url=self.current_url,
            failure=failure,
            message=self.message,
            paused=self.paused,
        )
        for listener in list(self._listeners):
            try:
                value = listener(event)
                if inspect.isawaitable(value):
                    await value
            except Exception as e:
                logger.error(f"Playback listener failed for session {self.session_id}: {e}")

    # Properties

    @property
    def current_url(self) -> Optional[str]:
        if 0 <= self.index < len(self.candidates):
            return self.candidates[self.index].url
        return None

    @property
    def fallback_url(self) -> Optional[str]:
        """Raw URL of the last candidate, offered once every source has failed."""
        if self.state == PlaybackState.EXHAUSTED and self.candidates:
            return self.candidates[-1].url
        return None

    @property
    def advancing(self) -> bool:
        return self._advance_task is not None and not self._advance_task.done()

    @property
    def finished(self) -> bool:
        """Exhausted, or stopped after having played a channel."""
        if self.state == PlaybackState.EXHAUSTED:
            return True
        return self.state == PlaybackState.IDLE and self.channel_id is not None

    # Public operations

    async def play(self, channel_id: str, candidates: Sequence[Stream]):
        """Start playing a channel from its first candidate, replacing anything current."""
        await self._teardown()
        self.channel_id = channel_id
        self.candidates = list(candidates)
        self.index = 0
        self.attempts = []
        self.message = None
        self.last_failure = None
        logger.info(
            f"Session {self.session_id}: playing channel {channel_id} "
            f"with {len(self.candidates)} candidates")
        await self._open_current()

    async def stop(self):
        """Cancel pending work and release the attached source before returning."""
        await self._teardown()
        self.state = PlaybackState.IDLE
        self.message = None
        logger.info(f"Session {self.session_id}: stopped")
        await self._notify()

    async def skip(self):
        """User-requested move to the next candidate; same transition as a failure."""
        if self.state in (PlaybackState.IDLE, PlaybackState.EXHAUSTED) or self.advancing:
            return
        if self.current_url:
            self.attempts.append(PlaybackAttempt(self.index, self.current_url, "skipped"))
        await self._begin_advance(None, "Switching to the next source")

    async def pause(self):
        if self.state != PlaybackState.PLAYING or self.paused or self.handle is None:
            return
        await self.handle.pause()
        self.paused = True
        await self._notify()

    async def resume(self):
        if self.state != PlaybackState.PLAYING or not self.paused or self.handle is None:
            return
        await self.handle.resume()
        self.paused = False
        await self._notify()

    def snapshot(self) -> Dict:
        return {
            "session_id": self.session_id,
            "channel_id": self.channel_id,
            "state": self.state.value,
            "paused": self.paused,
            "index": self.index,
            "total": len(self.candidates),
            "current_url": self.current_url,
            "fallback_url": self.fallback_url,
            "message": self.message,
            "last_failure": self.last_failure.value if self.last_failure else None,
            "attempts": [a.to_dict() for a in self.attempts],
            "created_at": self.created_at.isoformat(),
        }

    # Internals

    async def _set_state(self, state: PlaybackState, failure: Optional[FailureKind] = None):
        if state != self.state:
            logger.info(f"Session {self.session_id}: {self.state.value} -> {state.value} "
                        f"(source {self.index + 1}/{len(self.candidates)})")
        self.state = state
        await self._notify(failure)

    async def _cancel(self, task: Optional[asyncio.Task]):
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _close_handle(self):
        handle, self.handle = self.handle, None
        self.paused = False
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as e:
            logger.error(f"Error closing player for session {self.session_id}: {e}")

    async def _teardown(self):
        self._generation += 1
        await self._cancel(self._load_timer)
        await self._cancel(self._advance_task)
        await self._cancel(self._recovery_task)
        self._load_timer = self._advance_task = self._recovery_task = None
        await self._close_handle()

    def _start_load_timer(self, generation: int):
        self._load_timer = asyncio.create_task(self._load_timeout(generation))

    async def _load_timeout(self, generation: int):
        await asyncio.sleep(self.load_timeout)
        if generation == self._generation and self.state == PlaybackState.LOADING:
            self._load_timer = None
            await self._handle_failure(
                generation, FailureKind.TIMEOUT, f"No playable media after {self.load_timeout:g}s")

    async def _open_current(self):
        if self.index >= len(self.candidates):
            await self._exhaust()
            return

        self._generation += 1
        generation = self._generation
        self._recoveries = 0
        self.paused = False
        stream = self.candidates[self.index]
        await self._set_state(PlaybackState.LOADING)

        async def on_event(event: PlayerEvent):
            await self._on_player_event(generation, event)

        try:
            handle = await self.player.open(stream, on_event)
        except Exception as e:
            logger.error(f"Session {self.session_id}: could not open {stream.url}: {e}")
            await self._handle_failure(generation, FailureKind.UNKNOWN, str(e))
            return

        if generation != self._generation:
            # Failed or torn down while opening
            await handle.close()
            return
        self.handle = handle
        self._start_load_timer(generation)

    async def _exhaust(self):
        total = len(self.candidates)
        self.message = f"All {total} sources failed" if total else "No sources available"
        self.index = max(0, total - 1)
        logger.warning(f"Session {self.session_id}: channel {self.channel_id} exhausted")
        await self._set_state(PlaybackState.EXHAUSTED, self.last_failure)

    async def _on_player_event(self, generation: int, event: PlayerEvent):
        if generation != self._generation:
            return
        if event.kind == "playable":
            if self.state != PlaybackState.LOADING:
                return
            await self._cancel(self._load_timer)
            self._load_timer = None
            self.message = None
            self.attempts.append(PlaybackAttempt(self.index, self.current_url, "playing"))
            await self._set_state(PlaybackState.PLAYING)
        elif event.kind == "error":
            await self._handle_failure(generation, event.failure or FailureKind.UNKNOWN, event.detail)

    async def _handle_failure(self, generation: int, failure: FailureKind, detail: Optional[str]):
        if generation != self._generation or self.state not in (PlaybackState.LOADING, PlaybackState.PLAYING):
            return
        self.last_failure = failure
        logger.warning(f"Session {self.session_id}: source {self.index + 1} failed "
                       f"({failure.value}): {detail}")

        if failure == FailureKind.ABORTED:
            await self._cancel(self._load_timer)
            self._load_timer = None
            self.attempts.append(PlaybackAttempt(self.index, self.current_url, "failed", detail))
            self.message = FAILURE_MESSAGES[failure]
            await self._set_state(PlaybackState.FAILED, failure)
            return

        if failure in RECOVERABLE_FAILURES and self._recoveries < self.recovery_attempts:
            self._recoveries += 1
            self.attempts.append(PlaybackAttempt(self.index, self.current_url, "recovering", detail))
            self.message = f"{FAILURE_MESSAGES[failure]}, attempting recovery..."
            self._recovery_task = asyncio.create_task(self._recover(generation))
            return

        self.attempts.append(PlaybackAttempt(self.index, self.current_url, "failed", detail))
        await self._begin_advance(failure, FAILURE_MESSAGES.get(failure, "Playback error"))

    async def _recover(self, generation: int):
        await self._cancel(self._load_timer)
        self._load_timer = None
        await self._set_state(PlaybackState.LOADING, self.last_failure)
        try:
            if self.handle is not None:
                await self.handle.recover()
        except Exception as e:
            logger.error(f"Session {self.session_id}: recovery failed: {e}")
            await self._handle_failure(generation, FailureKind.UNKNOWN, str(e))
            return
        if generation == self._generation:
            self._start_load_timer(generation)

    async def _begin_advance(self, failure: Optional[FailureKind], message: str):
        # Invalidate the current handle's further events
        self._generation += 1
        await self._cancel(self._load_timer)
        self._load_timer = None
        remaining = len(self.candidates) - self.index - 1
        if remaining > 0:
            message = f"{message}, trying source {self.index + 2}/{len(self.candidates)}..."
        self.message = message
        await self._set_state(PlaybackState.FAILED, failure)
        self._advance_task = asyncio.create_task(self._advance(self._generation))

    async def _advance(self, generation: int):
        await self._cancel(self._recovery_task)
        self._recovery_task = None
        await self._close_handle()
        await asyncio.sleep(self.advance_delay)
        if generation != self._generation:
            return
        self.index += 1
        await self._open_current()


class PlaybackSessionManager:
    """Registry of live playback sessions, bounded by MAX_PLAYBACK_SESSIONS."""

    def __init__(self, player: MediaPlayer, max_sessions: Optional[int] = None):
        self.player = player
        self.max_sessions = max_sessions or settings.MAX_PLAYBACK_SESSIONS
        self.sessions: Dict[str, PlaybackSession] = {}
        self._lock = asyncio.Lock()

    async def create_session(self, channel_id: str, candidates: Sequence[Stream]) -> PlaybackSession:
        async with self._lock:
            evicted = []
            if len(self.sessions) >= self.max_sessions:
                evicted = [s for s in self.sessions.values() if s.finished]
                for old in evicted:
                    del self.sessions[old.session_id]
            if len(self.sessions) >= self.max_sessions:
                raise RuntimeError(f"Maximum of {self.max_sessions} playback sessions reached")
            session = PlaybackSession(self.player)
            self.sessions[session.session_id] = session
        for old in evicted:
            logger.info(f"Evicting finished session {old.session_id} ({old.state.value})")
            await old.stop()
        await session.play(channel_id, candidates)
        return session

    def get_session(self, session_id: str) -> Optional[PlaybackSession]:
        return self.sessions.get(session_id)

    async def close_session(self, session_id: str) -> Optional[PlaybackSession]:
        async with self._lock:
            session = self.sessions.pop(session_id, None)
        if session is not None:
            await session.stop()
        return session

    async def shutdown(self):
        logger.info("Shutting down PlaybackSessionManager...")
        for session_id in list(self.sessions):
            try:
                await self.close_session(session_id)
            except Exception as e:
                logger.error(f"Error stopping session {session_id}: {e}")
        logger.info("PlaybackSessionManager shutdown complete")
