"""Failure taxonomy surfaced by the live session coordinator."""
from __future__ import annotations

from typing import Any, Dict, Optional


class LiveSessionError(Exception):
    """Base class for errors the UI must present to the user.

    ``retryable`` errors get a dismissible banner with a manual retry action,
    ``fatal`` ones pre-empt the session view entirely.
    """

    retryable = False
    fatal = False
    user_message = "Something went wrong with the live class."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": type(self).__name__,
            "message": str(self),
            "user_message": self.user_message,
            "retryable": self.retryable,
            "fatal": self.fatal,
        }


class PermissionDenied(LiveSessionError):
    fatal = True
    user_message = (
        "Camera/microphone access was denied. Allow access in your system settings, then join again."
    )


class AuthExpired(LiveSessionError):
    fatal = True
    user_message = "Your login has expired. Please sign in again."


class SessionNotLive(LiveSessionError):
    user_message = "This class is not live yet."


class SessionEnded(LiveSessionError):
    user_message = "The teacher has ended this class."


class JoinTimeout(LiveSessionError):
    retryable = True
    user_message = "Joining the class took too long."


class JoinFailed(LiveSessionError):
    retryable = True
    user_message = "Could not join the class."

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class MediaInitFailed(LiveSessionError):
    retryable = True
    user_message = "Camera or microphone is busy or unavailable."


class SignalingDisconnected(LiveSessionError):
    retryable = True
    user_message = "Lost connection to the class. Rejoin to continue."
