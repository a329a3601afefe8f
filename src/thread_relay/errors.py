"""Error taxonomy shared by the relay's service and HTTP layers."""

from __future__ import annotations


class RelayError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500
    default_message = "Relay request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingInput(RelayError):
    """A required request field is absent."""

    status_code = 400
    default_message = "Missing required input"


class ThreadNotFound(RelayError):
    status_code = 404
    default_message = "Thread not found. Please check the thread ID."


class InvalidCredential(RelayError):
    status_code = 401
    default_message = "Invalid API key. Please check your OpenAI API key."


class UpstreamUnavailable(RelayError):
    """Any other upstream failure, including network faults."""

    status_code = 500
    default_message = "Failed to fetch thread messages"


class StorageFailure(RelayError):
    status_code = 500
    default_message = "Failed to fetch messages"
