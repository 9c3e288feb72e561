from __future__ import annotations


class TrackerError(Exception):
    """Base class for errors the HTTP layer maps to a status code."""

    status_code = 500


class ValidationError(TrackerError, ValueError):
    status_code = 400


class AuthenticationError(TrackerError):
    status_code = 401


class NotFoundError(TrackerError, LookupError):
    status_code = 404


class ConflictError(TrackerError):
    status_code = 409


class UpstreamError(TrackerError, RuntimeError):
    """Raised when the store or a third-party API (AI provider, Gmail) fails."""

    status_code = 502
