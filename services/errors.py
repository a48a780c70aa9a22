from typing import Optional


class CocodeError(Exception):
    """Base class for errors raised by the session-sync and run services."""


class InvalidRequest(CocodeError):
    """Caller supplied bad or incomplete input."""


class MissingCredential(CocodeError):
    """A server-side credential (e.g. the Judge0 API key) is not configured."""


class UpstreamFailure(CocodeError):
    """The external execution API answered with a non-success response."""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class AuthFallback(CocodeError):
    """Identity service is unusable; recovered internally with a local uid."""


class TransientSyncFailure(CocodeError):
    """Database unreachable or refusing a write; safe to retry later."""


class SessionNotFound(CocodeError):
    """The session document does not exist."""
