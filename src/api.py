from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
from typing import Optional, List
from pydantic import BaseModel, field_validator

from config import settings, VERSION
from playlist_loader import PlaylistCache, PlaylistLoader, PlaylistUnavailableError, IngestedPlaylist
from stream_prober import StreamProber
from stream_validator import StreamValidator, ValidationOptions
from validation_jobs import ValidationJobManager
from ffmpeg_player import FFmpegPlayer
from failover_controller import PlaybackSessionManager

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# Request models
class ValidateRequest(BaseModel):
    channel_ids: Optional[List[str]] = None
    grouped: bool = True
    concurrency: Optional[int] = None
    timeout_ms: Optional[int] = None
    exhaustive: bool = False
    # Flat mode only: probe just the first candidate of each channel
    first_only: bool = False

    @field_validator('concurrency')
    @classmethod
    def validate_concurrency(cls, v):
        if v is not None and not 1 <= v <= 64:
            raise ValueError("concurrency must be between 1 and 64")
        return v

    @field_validator('timeout_ms')
    @classmethod
    def validate_timeout(cls, v):
        if v is not None and not 500 <= v <= 120000:
            raise ValueError("timeout_ms must be between 500 and 120000")
        return v


class SessionCreateRequest(BaseModel):
    channel_id: str

    @field_validator('channel_id')
    @classmethod
    def validate_channel_id(cls, v):
        if not v or not v.strip():
            raise ValueError("channel_id cannot be empty")
        return v.strip()


playlist_cache = PlaylistCache()
playlist_loader = PlaylistLoader()
stream_prober = StreamProber()
job_manager = ValidationJobManager(StreamValidator(stream_prober))
session_manager = PlaybackSessionManager(FFmpegPlayer())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(f"channel-checker {VERSION} starting up...")
    logger.info(f"Playlist source: {playlist_loader.url}")

    yield

    logger.info("channel-checker shutting down...")
    await session_manager.shutdown()
    await job_manager.shutdown()
    await stream_prober.close()
    await playlist_loader.close()


app = FastAPI(
    title="channel-checker",
    version=VERSION,
    description="IPTV playlist ingestion, stream reachability validation and playback failover",
    lifespan=lifespan,
    root_path=settings.ROOT_PATH,
    docs_url=settings.DOCS_URL,
    openapi_url=settings.OPENAPI_URL,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def get_playlist(refresh: bool = False) -> IngestedPlaylist:
    """Current playlist, falling back to a stale cache when the origin is down."""
    try:
        return await playlist_loader.load(playlist_cache, force=refresh)
    except PlaylistUnavailableError as e:
        if playlist_cache.data is not None and not refresh:
            logger.warning(f"{e}; serving cached playlist")
            return playlist_cache.data
        logger.error(str(e))
        raise HTTPException(status_code=502, detail=str(e))


def channel_summary(playlist: IngestedPlaylist, channel) -> dict:
    data = channel.to_dict()
    data["stream_count"] = len(playlist.index.candidates(channel.id))
    return data


@app.get("/")
async def root():
    return {
        "status": "running",
        "message": "channel-checker is running",
        "version": VERSION,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint with cache and workload status"""
    age = playlist_cache.age_seconds()
    return {
        "status": "healthy",
        "version": VERSION,
        "playlist_url": playlist_loader.url,
        "playlist_cached": playlist_cache.data is not None,
        "cache_age_seconds": round(age, 1) if age is not None else None,
        "validation_jobs": len(job_manager.jobs),
        "playback_sessions": len(session_manager.sessions),
    }


@app.get("/channels")
async def list_channels(
    category: Optional[str] = Query(None, description="Only channels in this category"),
    country: Optional[str] = Query(None, description="Only channels from this country code"),
    playable_job: Optional[str] = Query(None, description="Only channels found playable by this validation job"),
    refresh: bool = Query(False, description="Refetch the playlist first")
):
    """List merged channels"""
    try:
        playable = None
        if playable_job:
            job = job_manager.get_job(playable_job)
            if job is None:
                raise HTTPException(status_code=404, detail="Validation job not found")
            playable = set(job.playable_channel_ids)

        playlist = await get_playlist(refresh)
        index = playlist.index
        channels = index.channels_in_category(category) if category else index.channels
        if country:
            in_country = {c.id for c in index.channels_in_country(country)}
            channels = [c for c in channels if c.id in in_country]
        if playable is not None:
            channels = [c for c in channels if c.id in playable]
        return {
            "channels": [channel_summary(playlist, c) for c in channels],
            "total": len(channels),
            "categories": index.categories(),
            "countries": index.countries(),
            "stream_count": index.stream_count,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing channels: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/channels/{channel_id}")
async def get_channel(channel_id: str):
    """Get one channel with its candidate streams in priority order"""
    try:
        playlist = await get_playlist()
        channel = playlist.index.get_channel(channel_id)
        if channel is None:
            raise HTTPException(status_code=404, detail="Channel not found")
        data = channel_summary(playlist, channel)
        data["streams"] = [s.to_dict() for s in playlist.index.candidates(channel_id)]
        return data
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting channel {channel_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/playlist/refresh")
async def refresh_playlist():
    """Force a refetch of the playlist origin"""
    playlist = await get_playlist(refresh=True)
    return {
        "message": "Playlist refreshed",
        "entries": playlist.entry_count,
        "channels": len(playlist.channels),
        "streams": len(playlist.streams),
    }


@app.post("/validate")
async def start_validation(request: ValidateRequest):
    """Start a background validation run over the selected channels"""
    try:
        playlist = await get_playlist()
        index = playlist.index
        if request.channel_ids is not None:
            unknown = [cid for cid in request.channel_ids if cid not in index]
            if unknown:
                raise HTTPException(
                    status_code=404, detail=f"Unknown channel ids: {', '.join(unknown)}")

        if request.grouped:
            targets = index.grouped_targets(request.channel_ids)
        else:
            targets = index.flat_targets(request.channel_ids, first_only=request.first_only)

        options = ValidationOptions(
            concurrency=request.concurrency,
            timeout_ms=request.timeout_ms,
            grouped=request.grouped,
            exhaustive=request.exhaustive,
        )
        job = await job_manager.start_job(targets, options)
        return {
            "job_id": job.job_id,
            "status": job.status,
            "total": job.total,
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error starting validation: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/validate/{job_id}")
async def get_validation(job_id: str):
    """Progress of a validation run; results once it has finished"""
    job = job_manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Validation job not found")
    return job.to_dict()


@app.get("/validate/{job_id}/export")
async def export_validation(job_id: str):
    """Download the results of a finished run as JSON"""
    job = job_manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Validation job not found")
    if not job.done:
        raise HTTPException(status_code=409, detail="Validation job still running")
    return Response(
        content=job.export(),
        media_type="application/json",
        headers={
            "Content-Disposition": f'attachment; filename="validation-{job_id}.json"'
        },
    )


@app.delete("/validate/{job_id}")
async def cancel_validation(job_id: str):
    """Cancel a running validation"""
    job = await job_manager.cancel_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Validation job not found")
    return job.to_dict(include_results=False)


@app.post("/sessions")
async def create_session(request: SessionCreateRequest):
    """Start playing a channel with automatic failover between its streams"""
    try:
        playlist = await get_playlist()
        if request.channel_id not in playlist.index:
            raise HTTPException(status_code=404, detail="Channel not found")
        candidates = playlist.index.candidates(request.channel_id)
        try:
            session = await session_manager.create_session(request.channel_id, candidates)
        except RuntimeError as e:
            raise HTTPException(status_code=429, detail=str(e))
        return session.snapshot()
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating playback session: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def _get_session_or_404(session_id: str):
    session = session_manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    return _get_session_or_404(session_id).snapshot()


@app.post("/sessions/{session_id}/skip")
async def skip_source(session_id: str):
    """Manually switch to the next candidate stream"""
    session = _get_session_or_404(session_id)
    await session.skip()
    return session.snapshot()


@app.post("/sessions/{session_id}/pause")
async def pause_session(session_id: str):
    session = _get_session_or_404(session_id)
    await session.pause()
    return session.snapshot()


@app.post("/sessions/{session_id}/resume")
async def resume_session(session_id: str):
    session = _get_session_or_404(session_id)
    await session.resume()
    return session.snapshot()


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    """Stop playback and release the player"""
    session = await session_manager.close_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session stopped", "session_id": session_id}
