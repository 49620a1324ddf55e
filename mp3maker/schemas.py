"""
Pydantic schemas for request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any


ProgressStatus = Literal["fetching", "downloading", "converting", "complete", "error"]

TERMINAL_STATUSES = ("complete", "error")


class ProgressEvent(BaseModel):
    """One progress update pushed to the browser over SSE"""
    status: ProgressStatus = Field(..., description="Phase or terminal status")
    percent: float = Field(0, ge=0, le=100, description="Progress percentage (0-100)")
    message: str = Field("", description="Human-readable progress message")
    speed: Optional[str] = Field(None, description="Transfer speed reported by yt-dlp, e.g. 1.20MiB/s")
    eta: Optional[str] = Field(None, description="Estimated time remaining, e.g. 00:12")
    error: Optional[str] = Field(None, description="Classified error message for terminal error events")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation; optional fields are sent only when present."""
        payload = {"status": self.status, "percent": self.percent, "message": self.message}
        if self.speed is not None:
            payload["speed"] = self.speed
        if self.eta is not None:
            payload["eta"] = self.eta
        if self.error is not None:
            payload["error"] = self.error
        return payload

    class Config:
        json_schema_extra = {
            "example": {
                "status": "downloading",
                "percent": 45.2,
                "message": "Downloading...",
                "speed": "1.20MiB/s",
                "eta": "00:12"
            }
        }


class DownloadRequest(BaseModel):
    """Request model for starting a conversion"""
    url: Optional[str] = Field(None, description="Media URL (YouTube, SoundCloud or Bandcamp)")

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
            }
        }


class DownloadResponse(BaseModel):
    """Response model for the download endpoint"""
    sessionId: str = Field(..., description="Session identifier used for progress, file and thumbnail")
    platform: str = Field(..., description="Detected platform")


class ThumbnailResponse(BaseModel):
    thumbnailUrl: str


class LogRecord(BaseModel):
    """One record of the admin log stream"""
    timestamp: str
    level: str
    message: str
    full: str


class CookieStatus(BaseModel):
    exists: bool
    ageInDays: Optional[int] = None


class ToolStatus(BaseModel):
    version: str


class ServerStatus(BaseModel):
    uptimeSeconds: int


class AdminHealthResponse(BaseModel):
    """Response model for the admin health endpoint"""
    cookies: CookieStatus
    ytdlp: ToolStatus
    server: ServerStatus


class CookieUpdateRequest(BaseModel):
    cookieText: Optional[str] = None


class CookieUpdateResponse(BaseModel):
    success: bool
    message: str
    timestamp: str


class ErrorResponse(BaseModel):
    """Standard error response"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[str] = Field(None, description="Additional error details")
