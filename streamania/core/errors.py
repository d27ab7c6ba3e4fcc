class StreamaniaError(Exception):
    """Base class for failures surfaced to API clients as ``{"detail": message}``."""

    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(StreamaniaError):
    status_code = 400
    default_message = "Invalid request"


class InvalidCredentials(StreamaniaError):
    status_code = 401
    default_message = "Invalid email or password"


class NotAuthenticated(StreamaniaError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(StreamaniaError):
    status_code = 403
    default_message = "Admin access required"


class ChatForbidden(StreamaniaError):
    status_code = 403
    default_message = "You cannot send messages right now"


class NotFound(StreamaniaError):
    status_code = 404
    default_message = "Not found"


class DuplicateUsername(StreamaniaError):
    status_code = 409
    default_message = "Username already exists. Please choose a different username."


class DuplicateAnswer(StreamaniaError):
    status_code = 409
    default_message = "You have already answered this quiz"


class ModerationConflict(StreamaniaError):
    status_code = 409
    default_message = "Moderation status was changed by someone else"


class SlowModeActive(StreamaniaError):
    status_code = 429
    default_message = "Slow mode is on, wait before sending another message"


class VideoLookupFailed(StreamaniaError):
    status_code = 502
    default_message = "Failed to fetch video data"


class RemoteWriteFailed(StreamaniaError):
    status_code = 503
    default_message = "Failed to save changes"
