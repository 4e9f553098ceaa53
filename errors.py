"""Shared error codes, user-facing messages and exception types."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
CAPTURE_UNAVAILABLE = "CAPTURE_UNAVAILABLE"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"
STORAGE_QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"
STORAGE_UNRECOVERABLE = "STORAGE_UNRECOVERABLE"
HISTORY_CORRUPT = "HISTORY_CORRUPT"
COMMAND_FAILED = "COMMAND_FAILED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission denied. Please allow access and try again.",
    CAPTURE_UNAVAILABLE: "No microphone found. Please connect a microphone.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    ASR_PROTOCOL_ERROR: "Speech recognition response format is invalid.",
    STORAGE_QUOTA_EXCEEDED: "Storage is full, older messages were dropped.",
    STORAGE_UNRECOVERABLE: "Chat history could not be saved.",
    HISTORY_CORRUPT: "Saved chat history was unreadable and has been reset.",
    COMMAND_FAILED: "Sorry, I encountered an error.",
}

TRANSPORT_FAILURE_REPLY = "Sorry, I encountered an error processing your request."


class StorageQuotaError(Exception):
    """Raised by a key-value store when a write would exceed its quota."""


class CaptureError(Exception):
    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)


class TransportError(Exception):
    """Raised when the HTTP fallback request cannot be completed."""
