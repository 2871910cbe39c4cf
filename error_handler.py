# -*- coding: utf-8 -*-
"""
Error Handling for Story Studio

Provides:
- Failure classification for key rotation (auth / retryable / fatal)
- Key pool exhaustion errors
- Structured error records with user-friendly messages
- Logging helpers

The upstream Gemini API does not promise structured error types, so
classification is done with regex patterns over the error text. The
pattern lists live here and can be extended from the environment.
"""

import re
import traceback
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from config import ErrorCode, app_config


class FailureKind(str, Enum):
    AUTH = "auth"
    RETRYABLE = "retryable"
    FATAL = "fatal"


class KeysExhaustedError(Exception):
    """
    Raised when no configured key could complete a call.

    The UI treats this as "ask the user for new keys" rather than a
    generic error banner.
    """

    prompt_for_keys = True

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        source: Optional[str] = None,
        last_error: Optional[BaseException] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.source = source
        self.last_error = last_error
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "source": self.source,
            "attempts": self.attempts,
            "last_error": str(self.last_error)[:300] if self.last_error else None,
            "prompt_for_keys": self.prompt_for_keys,
        }


class NoKeysConfiguredError(KeysExhaustedError):
    """Neither the user nor the server environment supplied any key"""

    def __init__(self):
        super().__init__(
            ErrorCode.NO_KEYS_CONFIGURED,
            NO_KEYS_MESSAGE,
        )


class InvalidResponseError(ValueError):
    """The model answered, but not with the payload shape we asked for"""


class GenerationTimeoutError(TimeoutError):
    """A long-running generation did not finish in time"""


class GenerationFailedError(RuntimeError):
    """The model accepted the job but reported it as failed"""


NO_KEYS_MESSAGE = (
    "No Gemini API key is configured. Add your own API key, "
    "or ask the administrator to set GEMINI_API_KEY on the server."
)
USER_KEYS_EXHAUSTED_MESSAGE = (
    "All of your API keys failed (invalid, rate-limited or out of quota). "
    "Check your keys or add a new one."
)
SYSTEM_KEYS_EXHAUSTED_MESSAGE = (
    "The built-in API keys are exhausted or unavailable. "
    "Add your own Gemini API key to continue."
)


@dataclass
class StudioError:
    """Structured error information"""
    code: ErrorCode
    message: str
    user_message: str
    details: Dict[str, Any]
    recoverable: bool
    suggestion: str
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp.isoformat(),
        }


def error_text(exception: BaseException) -> str:
    """Text the patterns are matched against"""
    text = str(exception)
    message = getattr(exception, "message", None)
    if isinstance(message, str) and message and message not in text:
        text = f"{text} {message}"
    return text or type(exception).__name__


class ErrorHandler:
    """
    Centralized error classification.

    Usage:
        handler = ErrorHandler()
        if handler.is_auth_failure(exc):
            pool.mark_invalid(key)
        elif handler.is_retryable_failure(exc):
            ...  # try the next key
        else:
            raise
    """

    # The key itself is rejected
    AUTH_PATTERNS = [
        r"api.?key.?not.?valid",
        r"api.?key.?invalid",
        r"invalid.?api.?key",
        r"api.?key.?expired",
        r"permission.?denied",
        r"forbidden",
        r"unauthenticated",
        r"unauthorized",
        r"\b401\b",
        r"\b403\b",
        r"suspended",
    ]

    # Quota / rate limiting - the key may work again later
    RATE_LIMIT_PATTERNS = [
        r"\b429\b",
        r"resource.?exhausted",
        r"rate.?limit",
        r"quota",
        r"too.?many.?requests",
    ]

    # Server-side faults
    SERVER_ERROR_PATTERNS = [
        r"\b50[0234]\b",
        r"internal.?(server.?)?error",
        r"\bunavailable\b",
        r"overloaded",
        r"deadline.?exceeded",
        r"try.?again.?later",
    ]

    CONTENT_BLOCKED_PATTERNS = [
        r"safety",
        r"blocked",
        r"prohibited.?content",
        r"content.?policy",
    ]

    def __init__(
        self,
        extra_auth_patterns: Optional[List[str]] = None,
        extra_retryable_patterns: Optional[List[str]] = None,
    ):
        self.auth_patterns = list(self.AUTH_PATTERNS) + list(extra_auth_patterns or [])
        self.retryable_patterns = (
            list(self.RATE_LIMIT_PATTERNS)
            + list(self.SERVER_ERROR_PATTERNS)
            + list(extra_retryable_patterns or [])
        )
        self.error_counts: Dict[ErrorCode, int] = {}

    # ------------------------------------------------------------------
    # Rotation predicates
    # ------------------------------------------------------------------

    def is_auth_failure(self, exception: BaseException) -> bool:
        """The key was rejected (invalid, forbidden, permission denied)"""
        return self._matches_patterns(error_text(exception), self.auth_patterns)

    def is_retryable_failure(self, exception: BaseException) -> bool:
        """Rate limit, quota exhaustion or a 5xx-class server fault"""
        return self._matches_patterns(error_text(exception), self.retryable_patterns)

    def is_rate_limit_failure(self, exception: BaseException) -> bool:
        """Retryable, and specifically a 429 / quota problem"""
        return self._matches_patterns(error_text(exception), self.RATE_LIMIT_PATTERNS)

    def classify_failure(self, exception: BaseException) -> FailureKind:
        # Auth first: "403 ... quota project" is still a rejected key
        if self.is_auth_failure(exception):
            return FailureKind.AUTH
        if self.is_retryable_failure(exception):
            return FailureKind.RETRYABLE
        return FailureKind.FATAL

    # ------------------------------------------------------------------
    # Structured classification
    # ------------------------------------------------------------------

    def classify_exception(
        self,
        exception: BaseException,
        context: Dict[str, Any] = None
    ) -> StudioError:
        """
        Classify an exception into a structured StudioError.

        Args:
            exception: The caught exception
            context: Additional context (operation name, item index, etc.)

        Returns:
            StudioError with classification and suggestions
        """
        if context is None:
            context = {}

        details = {
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            **context
        }

        error = self._classify(exception, details)
        self._increment_count(error.code)
        return error

    def _classify(self, exception: BaseException, details: Dict) -> StudioError:
        if isinstance(exception, KeysExhaustedError):
            return StudioError(
                code=exception.code,
                message=exception.message,
                user_message=exception.message,
                details={**details, **exception.to_dict()},
                recoverable=False,
                suggestion="Open the API key settings and add a working Gemini API key.",
            )

        if isinstance(exception, InvalidResponseError):
            return StudioError(
                code=ErrorCode.INVALID_RESPONSE,
                message=f"Invalid model response: {exception}",
                user_message=str(exception),
                details=details,
                recoverable=True,
                suggestion="Try again. The model sometimes returns an incomplete answer.",
            )

        if isinstance(exception, (GenerationTimeoutError, TimeoutError)):
            return StudioError(
                code=ErrorCode.GENERATION_TIMEOUT,
                message=f"Generation timed out: {exception}",
                user_message="The generation took too long and was stopped.",
                details=details,
                recoverable=True,
                suggestion="Try again, or use a faster model.",
            )

        if isinstance(exception, GenerationFailedError):
            return StudioError(
                code=ErrorCode.GENERATION_FAILED,
                message=str(exception),
                user_message=str(exception),
                details=details,
                recoverable=True,
                suggestion="Adjust the prompt or input image and try again.",
            )

        text = error_text(exception)
        kind = self.classify_failure(exception)

        if kind == FailureKind.AUTH:
            return StudioError(
                code=ErrorCode.API_KEY_INVALID,
                message="API key authentication failed",
                user_message="The API key was rejected. Please check your API keys.",
                details=details,
                recoverable=False,
                suggestion="Verify your API keys are correct and have access to this model.",
            )

        if kind == FailureKind.RETRYABLE:
            if self.is_rate_limit_failure(exception):
                return StudioError(
                    code=ErrorCode.RATE_LIMIT,
                    message="API rate limit or quota exceeded (429)",
                    user_message="The API is rate-limited right now. Please wait a moment.",
                    details=details,
                    recoverable=True,
                    suggestion="Wait a minute or add more API keys for rotation.",
                )
            return StudioError(
                code=ErrorCode.API_SERVER_ERROR,
                message="Gemini API server error",
                user_message="The AI service is temporarily unavailable. Please try again.",
                details=details,
                recoverable=True,
                suggestion="This is a temporary service issue. Try again shortly.",
            )

        if self._matches_patterns(text, self.CONTENT_BLOCKED_PATTERNS):
            return StudioError(
                code=ErrorCode.CONTENT_BLOCKED,
                message="Content blocked by safety filter",
                user_message="The request was blocked by the safety filter.",
                details=details,
                recoverable=False,
                suggestion="Rephrase the prompt and try again.",
            )

        if isinstance(exception, (ValueError, TypeError)):
            return StudioError(
                code=ErrorCode.INVALID_REQUEST,
                message=f"Invalid request: {exception}",
                user_message=str(exception),
                details=details,
                recoverable=False,
                suggestion="Review the input and try again.",
            )

        return StudioError(
            code=ErrorCode.UNKNOWN,
            message=f"Unknown error: {type(exception).__name__}: {str(exception)[:200]}",
            user_message=str(exception) or "An unexpected error occurred.",
            details=details,
            recoverable=False,
            suggestion="Try again. If the problem persists, check the server logs.",
        )

    def _matches_patterns(self, text: str, patterns: list) -> bool:
        """Check if text matches any of the patterns"""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False

    def _increment_count(self, code: ErrorCode):
        """Track error occurrences"""
        self.error_counts[code] = self.error_counts.get(code, 0) + 1

    def get_error_summary(self) -> Dict[str, int]:
        """Get summary of error counts"""
        return {code.value: count for code, count in self.error_counts.items()}


# Singleton error handler
error_handler = ErrorHandler(
    extra_auth_patterns=app_config.extra_auth_patterns,
    extra_retryable_patterns=app_config.extra_retryable_patterns,
)


def is_auth_failure(exception: BaseException) -> bool:
    return error_handler.is_auth_failure(exception)


def is_retryable_failure(exception: BaseException) -> bool:
    return error_handler.is_retryable_failure(exception)


def format_error_for_log(error: StudioError, exception: BaseException = None) -> str:
    """Format error for detailed logging"""
    lines = [
        f"[{error.code.value}] {error.message}",
        f"Recoverable: {error.recoverable}",
        f"Details: {error.details}",
    ]
    if exception is not None and exception.__traceback__ is not None:
        tb = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))
        lines.append(f"Traceback:\n{tb}")
    return "\n".join(lines)
