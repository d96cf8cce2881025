"""
Error taxonomy shared by the core and the HTTP layer.
"""


class UpcycleError(Exception):
    """Base class carrying the HTTP status and a stable error kind."""

    status_code = 500
    kind = "internal"

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self):
        return {"kind": self.kind, "message": self.message}


class InputError(UpcycleError):
    """Empty or unusable prompt. Never retried."""

    status_code = 400
    kind = "bad_input"


class InvalidInputError(InputError):
    """Embedding requested for an empty or non-list keyword collection."""


class ForbiddenError(UpcycleError):
    status_code = 403
    kind = "forbidden"


class NotFoundError(UpcycleError):
    status_code = 404
    kind = "not_found"


class ConflictError(UpcycleError):
    status_code = 409
    kind = "conflict"


class UpstreamError(UpcycleError):
    """The generation backend could not produce a usable answer."""

    status_code = 502
    kind = "upstream_failure"


class UpstreamTransientError(UpstreamError):
    """Network-level failure talking to the generation backend.

    reason is one of: connection_refused, timeout, connection_reset,
    http_status, empty_response.
    """

    def __init__(self, message: str, reason: str, status: int = None):
        super().__init__(message)
        self.reason = reason
        self.status = status


class UpstreamMalformedError(UpstreamError):
    """Backend answered, but the answer is not the structured format we asked for."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class StorageError(UpcycleError):
    status_code = 500
    kind = "storage"
