"""
couch_errors.py — Error types shared by the transport and the feed decoders

Taxonomy:
  ServerError     = CouchDB answered with status >= 400 (raised when opening)
  NetworkError    = request could not be issued, or the connection failed
  FeedDecodeError = the feed body could not be decoded (recorded on the feed)
"""

from typing import Optional


class CouchError(Exception):
    """Structured error with code and optional HTTP status."""

    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
        }


class ServerError(CouchError):
    """API-level error, reported by CouchDB as {"error": <code>, "reason": <reason>}.

    error and reason are empty for HEAD requests, which carry no body.
    """

    def __init__(
        self,
        method: str,
        url: str,
        status_code: int,
        error: str = "",
        reason: str = "",
    ):
        if error:
            message = f"{method} {url}: ({status_code}) {error}: {reason}"
        else:
            message = f"{method} {url}: {status_code}"
        super().__init__("server_error", message, status_code=status_code)
        self.method = method
        self.url = url
        self.error = error
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["couchdb_error"] = self.error
        data["reason"] = self.reason
        return data


class NetworkError(CouchError):
    def __init__(self, message: str):
        super().__init__("network_error", message)


class FeedDecodeError(CouchError):
    def __init__(self, message: str):
        super().__init__("decode_error", message)


def error_status(err: Optional[BaseException], status_code: int) -> bool:
    """Check whether err is a ServerError with a matching status code."""
    return isinstance(err, ServerError) and err.status_code == status_code


def not_found(err: Optional[BaseException]) -> bool:
    return error_status(err, 404)


def unauthorized(err: Optional[BaseException]) -> bool:
    return error_status(err, 401)


def conflict(err: Optional[BaseException]) -> bool:
    return error_status(err, 409)
