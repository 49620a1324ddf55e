"""
Error taxonomy for the conversion pipeline.

Provides structured errors with:
- Categorized error codes for every failure scenario
- User-friendly messages that never expose raw tool diagnostics
- Classification of yt-dlp failures into user-facing categories
"""

import re
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """
    Enumeration of all error codes raised by the service.

    Organized by category:
    - Request Errors: surfaced synchronously to the HTTP caller
    - Pipeline Errors: surfaced as a terminal progress event
    - Soft Errors: absorbed and logged by the orchestrator
    """

    # Request Errors (4xx/5xx on the HTTP call)
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    SESSION_LIMIT_REACHED = "SESSION_LIMIT_REACHED"

    # Pipeline Errors
    SUBPROCESS_FAILURE = "SUBPROCESS_FAILURE"
    SUBPROCESS_SIGNAL = "SUBPROCESS_SIGNAL"
    CONVERSION_TIMEOUT = "CONVERSION_TIMEOUT"
    ARTIFACT_MISSING = "ARTIFACT_MISSING"

    # Soft Errors
    METADATA_TIMEOUT = "METADATA_TIMEOUT"
    CHANNEL_TIMEOUT = "CHANNEL_TIMEOUT"


FRIENDLY_MESSAGES = {
    ErrorCode.INVALID_INPUT: "Please provide a valid URL",
    ErrorCode.NOT_FOUND: "File not found or expired",
    ErrorCode.SESSION_LIMIT_REACHED: "The server is busy. Please try again in a moment.",
    ErrorCode.SUBPROCESS_FAILURE: "Download failed. Please try again.",
    ErrorCode.SUBPROCESS_SIGNAL: "Download was cancelled",
    ErrorCode.CONVERSION_TIMEOUT: "Download timeout - video may be too long",
    ErrorCode.ARTIFACT_MISSING: "Conversion finished but no MP3 was produced",
    ErrorCode.METADATA_TIMEOUT: "Could not fetch video info in time",
    ErrorCode.CHANNEL_TIMEOUT: "Progress connection was not established in time",
}


class MP3MakerError(Exception):
    """
    Base exception for service errors.

    Carries an error code for categorization, a detailed message for
    logging, a context dictionary for debugging and a user-friendly
    message for API responses and progress events.

    Example:
        >>> raise MP3MakerError(
        ...     ErrorCode.INVALID_INPUT,
        ...     "URL is required",
        ...     {"field": "url"}
        ... )
    """

    code = ErrorCode.SUBPROCESS_FAILURE

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: str = "",
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None
    ):
        if code is not None:
            self.code = code
        self.message = message or FRIENDLY_MESSAGES.get(self.code, self.code.value)
        self.details = details or {}
        self._user_message = user_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to the `detail` body used by HTTPException.

        Example:
            >>> NotFound("Session abc not found").to_dict()
            {'error': 'NOT_FOUND', 'message': 'File not found or expired', 'details': 'Session abc not found'}
        """
        return {
            "error": self.code.value,
            "message": self.get_user_friendly_message(),
            "details": self.message,
        }

    def get_user_friendly_message(self) -> str:
        if self._user_message:
            return self._user_message
        return FRIENDLY_MESSAGES.get(
            self.code,
            "An error occurred. Please try again."
        )

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class InvalidInput(MP3MakerError):
    """Missing or unsupported URL."""

    code = ErrorCode.INVALID_INPUT

    def __init__(self, message: str, user_message: Optional[str] = None, field: str = "url"):
        super().__init__(message=message, details={"field": field}, user_message=user_message)


class NotFound(MP3MakerError):
    """Unknown session, or a session without a completed artifact."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message=message, user_message=user_message)


class SessionLimitReached(MP3MakerError):
    code = ErrorCode.SESSION_LIMIT_REACHED

    def __init__(self, limit: int):
        super().__init__(
            message=f"Concurrent session limit of {limit} reached",
            details={"limit": limit},
        )


class MetadataTimeout(MP3MakerError):
    """The metadata-only invocation did not finish in time."""

    code = ErrorCode.METADATA_TIMEOUT

    def __init__(self, timeout: float):
        super().__init__(
            message=f"Info fetch timeout after {timeout:g}s",
            details={"timeout": timeout},
        )


class ChannelTimeout(MP3MakerError):
    """No subscriber attached to a session within the wait window."""

    code = ErrorCode.CHANNEL_TIMEOUT

    def __init__(self, session_id: str, timeout: float):
        super().__init__(
            message=f"SSE connection timeout for session: {session_id}",
            details={"session_id": session_id, "timeout": timeout},
        )


class SubprocessFailure(MP3MakerError):
    """
    yt-dlp exited with a non-zero code.

    The exit code and the tail of stderr are the ground truth for why the
    process failed; they are logged in full and only classified for users.
    """

    code = ErrorCode.SUBPROCESS_FAILURE

    def __init__(self, exit_code: Optional[int], stderr_tail: str = "", message: Optional[str] = None):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        super().__init__(
            message=message or f"yt-dlp process failed with exit code {exit_code}",
            details={"exit_code": exit_code, "stderr_tail": stderr_tail},
        )


class SubprocessSignal(MP3MakerError):
    """The subprocess was terminated on request (client went away, shutdown)."""

    code = ErrorCode.SUBPROCESS_SIGNAL

    def __init__(self, returncode: Optional[int] = None):
        self.returncode = returncode
        super().__init__(
            message=f"yt-dlp process terminated by signal (returncode {returncode})",
            details={"returncode": returncode},
        )


class ConversionTimeout(MP3MakerError):
    code = ErrorCode.CONVERSION_TIMEOUT

    def __init__(self, timeout: float):
        super().__init__(
            message=f"Conversion exceeded {timeout:g}s",
            details={"timeout": timeout},
        )


class ArtifactMissing(MP3MakerError):
    code = ErrorCode.ARTIFACT_MISSING

    def __init__(self, path: str):
        super().__init__(message=f"Expected output file not found: {path}", details={"path": path})


# Ordered: first matching category wins
_FAILURE_CATEGORIES = [
    (re.compile(r"geo|available in your (country|region)"),
     "Video not available in your region"),
    (re.compile(r"copyright"),
     "Copyright restriction"),
    (re.compile(r"age[- ]restricted|confirm your age|inappropriate for some users"),
     "This video is age-restricted and cannot be downloaded"),
    (re.compile(r"private|unavailable|removed|does not exist|404"),
     "This video is private or unavailable"),
    (re.compile(r"timeout|timed out"),
     "Download timeout - video may be too long"),
    (re.compile(r"network|enotfound|getaddrinfo|name or service not known|connection (refused|reset)|unable to download webpage"),
     "Network error. Please check your internet connection"),
]


def classify_failure(error: Exception, exit_code: Optional[int] = None) -> str:
    """
    Map a pipeline failure to a short, non-technical message for the user.

    Args:
        error: The exception that ended the session
        exit_code: yt-dlp exit code when known

    Returns:
        User-facing message for the terminal error event

    Example:
        >>> classify_failure(SubprocessFailure(1, "ERROR: Private video"))
        'This video is private or unavailable'
    """
    if isinstance(error, MP3MakerError) and error.code in (
        ErrorCode.CONVERSION_TIMEOUT,
        ErrorCode.ARTIFACT_MISSING,
    ):
        return error.get_user_friendly_message()

    text = str(error)
    if isinstance(error, SubprocessFailure):
        exit_code = error.exit_code if exit_code is None else exit_code
        text = f"{error.stderr_tail}\n{error.message}"
    text = text.lower()

    for pattern, message in _FAILURE_CATEGORIES:
        if pattern.search(text):
            return message

    # yt-dlp uses exit code 1 for extraction errors without a clearer cause
    if exit_code == 1:
        return "Video unavailable or private"

    return FRIENDLY_MESSAGES[ErrorCode.SUBPROCESS_FAILURE]
