"""
Download endpoint router

Handles starting conversions, streaming their progress over SSE and the
single-shot retrieval of the finished MP3.
"""

import asyncio
from typing import Callable

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path as PathParam, Request
from fastapi.responses import FileResponse, StreamingResponse

from mp3maker.config import settings
from mp3maker.dependencies import get_broadcaster, get_orchestrator, get_registry
from mp3maker.errors import InvalidInput, NotFound, SessionLimitReached
from mp3maker.schemas import DownloadRequest, DownloadResponse, ErrorResponse, ThumbnailResponse
from mp3maker.services.broadcaster import ChannelClosed, ProgressBroadcaster, format_sse
from mp3maker.services.orchestrator import DownloadOrchestrator
from mp3maker.services.session_registry import SessionRegistry, SessionState

logger = structlog.get_logger()

router = APIRouter(tags=["Download"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

THUMBNAIL_FALLBACK = f"{settings.BASE_PATH}/oops.jpg"


class OneShotFileResponse(FileResponse):
    """FileResponse that runs `on_finish` once the transfer ends, whether it succeeded or not."""

    def __init__(self, *args, on_finish: Callable[[], None], **kwargs):
        super().__init__(*args, **kwargs)
        self.on_finish = on_finish

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.on_finish()


@router.post(
    "/download",
    response_model=DownloadResponse,
    status_code=200,
    responses={
        200: {"description": "Session created; progress available at /progress/{sessionId}"},
        400: {"model": ErrorResponse, "description": "Missing or unsupported URL"},
        503: {"model": ErrorResponse, "description": "Too many active sessions"}
    },
    summary="Convert a media URL to MP3",
)
async def start_download(
    payload: DownloadRequest,
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator),
):
    """
    Start converting a YouTube, SoundCloud or Bandcamp URL to a 320k MP3.

    Returns the session id immediately; the conversion runs in the
    background and reports progress on `/progress/{sessionId}`.
    """
    try:
        session = orchestrator.start(payload.url)
    except InvalidInput as e:
        logger.warning("invalid_url_attempted", url=(payload.url or "")[:100], error=e.message)
        raise HTTPException(status_code=400, detail=e.to_dict())
    except SessionLimitReached as e:
        raise HTTPException(status_code=503, detail=e.to_dict())

    return DownloadResponse(sessionId=session.id, platform=session.platform)


@router.get(
    "/progress/{session_id}",
    responses={
        200: {"description": "text/event-stream of progress events", "content": {"text/event-stream": {}}},
        404: {"model": ErrorResponse, "description": "Session not found"}
    },
    summary="Stream conversion progress",
)
async def progress_stream(
    request: Request,
    session_id: str = PathParam(..., description="Session identifier returned by /download"),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator),
):
    """
    Server-Sent Events stream of `{status, percent, message, speed?, eta?, error?}`.

    The current state is replayed first, so a client that connects late
    still sees the terminal event. The stream ends after the terminal
    event. Closing it before that cancels the conversion.
    """
    try:
        channel = broadcaster.subscribe(session_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=e.to_dict())

    async def event_stream():
        try:
            while True:
                try:
                    event = await channel.receive(timeout=settings.SSE_KEEPALIVE_INTERVAL)
                except ChannelClosed:
                    break
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event.to_payload())
        finally:
            orchestrator.subscriber_disconnected(session_id, channel)

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get(
    "/file/{session_id}",
    responses={
        200: {"description": "The MP3 file", "content": {"audio/mpeg": {}}},
        404: {"model": ErrorResponse, "description": "File not found or already retrieved"}
    },
    summary="Retrieve the converted MP3",
)
async def retrieve_file(
    session_id: str = PathParam(..., description="Session identifier returned by /download"),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Download the MP3 of a completed session.

    Succeeds once per session: the file is deleted and the session evicted
    after the transfer.
    """
    session = registry.get(session_id)
    if session is None or session.state != SessionState.COMPLETE or session.result_file is None:
        error = NotFound(f"No completed file for session {session_id}")
        raise HTTPException(status_code=404, detail=error.to_dict())

    path = session.take_result()
    if not path.exists():
        registry.remove(session_id)
        error = NotFound(f"File for session {session_id} is missing on disk", user_message="File not found")
        raise HTTPException(status_code=404, detail=error.to_dict())

    def finish() -> None:
        path.unlink(missing_ok=True)
        registry.remove(session_id)
        logger.info("temp_file_deleted", session_id=session_id, file=path.name)

    filename = f"{session.title or 'audio'}.mp3"
    logger.info("file_retrieval_started", session_id=session_id, filename=filename)
    return OneShotFileResponse(
        path=str(path),
        media_type="audio/mpeg",
        filename=filename,
        on_finish=finish,
    )


@router.get(
    "/thumbnail/{session_id}",
    response_model=ThumbnailResponse,
    responses={404: {"model": ErrorResponse, "description": "Session not found"}},
    summary="Get the session thumbnail URL",
)
async def get_thumbnail(
    session_id: str = PathParam(..., description="Session identifier returned by /download"),
    registry: SessionRegistry = Depends(get_registry),
):
    session = registry.get(session_id)
    if session is None:
        error = NotFound(f"Session {session_id} not found", user_message="Session not found")
        raise HTTPException(status_code=404, detail=error.to_dict())

    return ThumbnailResponse(thumbnailUrl=session.thumbnail_url or THUMBNAIL_FALLBACK)
