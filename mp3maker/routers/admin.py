"""
Admin endpoint router

Health of the external tool and auth material, cookie file replacement and
the live log stream. These endpoints are not authenticated.
"""

import asyncio
import os
import time
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from mp3maker.config import settings
from mp3maker.dependencies import get_log_hub, get_supervisor
from mp3maker.schemas import (
    AdminHealthResponse,
    CookieStatus,
    CookieUpdateRequest,
    CookieUpdateResponse,
    ErrorResponse,
    ServerStatus,
    ToolStatus,
)
from mp3maker.services.broadcaster import ChannelClosed, format_sse
from mp3maker.services.log_hub import LogHub
from mp3maker.services.process_supervisor import ProcessSupervisor

logger = structlog.get_logger()

router = APIRouter(prefix="/admin", tags=["Admin"])

SECONDS_PER_DAY = 60 * 60 * 24


def _open_private(path: str, flags: int) -> int:
    return os.open(path, flags, 0o600)


@router.get(
    "/health",
    response_model=AdminHealthResponse,
    responses={500: {"model": ErrorResponse, "description": "Failed to get health status"}},
    summary="Cookie, yt-dlp and server status",
)
async def admin_health(
    request: Request,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
):
    try:
        cookie_path = Path(supervisor.cookies_file)
        exists = cookie_path.exists()
        age_in_days = None
        if exists:
            age_seconds = time.time() - cookie_path.stat().st_mtime
            age_in_days = round(age_seconds / SECONDS_PER_DAY)

        version = await supervisor.version()
        uptime = time.monotonic() - request.app.state.started_at
    except OSError as e:
        logger.error("admin_health_check_error", error=str(e))
        raise HTTPException(
            status_code=500,
            detail={
                "error": "InternalError",
                "message": "Failed to get health status",
                "details": str(e)
            }
        )

    return AdminHealthResponse(
        cookies=CookieStatus(exists=exists, ageInDays=age_in_days),
        ytdlp=ToolStatus(version=version),
        server=ServerStatus(uptimeSeconds=round(uptime)),
    )


@router.post(
    "/update-cookies",
    response_model=CookieUpdateResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Cookie content is empty"},
        500: {"model": ErrorResponse, "description": "Cookie file could not be written"}
    },
    summary="Replace the cookies file",
)
async def update_cookies(
    request: Request,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
):
    """
    Replace the Netscape-format cookies file used in production.

    Accepts the raw file as the request body, or JSON `{"cookieText": "..."}`.
    """
    body = (await request.body()).decode("utf-8", errors="replace")
    content = body
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            content = CookieUpdateRequest.model_validate_json(body or "{}").cookieText or ""
        except ValidationError:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "ValidationError",
                    "message": "Invalid JSON body",
                    "details": "Expected {\"cookieText\": \"...\"}"
                }
            )

    if not content or not content.strip():
        raise HTTPException(
            status_code=400,
            detail={
                "error": "ValidationError",
                "message": "Cookie content is empty",
                "details": "Paste the contents of a cookies.txt file"
            }
        )

    cookie_path = supervisor.cookies_file
    try:
        async with aiofiles.open(cookie_path, "w", opener=_open_private) as f:
            await f.write(content)
        os.chmod(cookie_path, 0o600)
    except OSError as e:
        logger.error("cookies_update_failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail={
                "error": "StorageError",
                "message": "Failed to update cookies",
                "details": str(e)
            }
        )

    logger.info("cookies_updated", path=cookie_path, size=len(content))
    return CookieUpdateResponse(
        success=True,
        message="Cookies updated successfully",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get(
    "/logs",
    responses={200: {"description": "text/event-stream of log records", "content": {"text/event-stream": {}}}},
    summary="Stream server logs",
)
async def admin_logs(
    request: Request,
    log_hub: LogHub = Depends(get_log_hub),
):
    """Replays the retained log history, then streams new records."""
    channel = log_hub.subscribe()
    logger.info("admin_log_viewer_connected", active=log_hub.viewer_count)

    async def event_stream():
        try:
            while True:
                try:
                    record = await channel.receive(timeout=settings.SSE_KEEPALIVE_INTERVAL)
                except ChannelClosed:
                    break
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(record.model_dump())
        finally:
            log_hub.unsubscribe(channel)
            logger.info("admin_log_viewer_disconnected", active=log_hub.viewer_count)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
