"""Request errors and their HTTP translation."""

from __future__ import annotations


class TranscodeError(Exception):
    """Error that is reported to the client as a plain-text status response."""

    status_code = 500
    message = "Internal Server Error"

    def __init__(self, detail: str = "", message: str | None = None) -> None:
        super().__init__(detail or message or self.message)
        self.detail = detail
        if message is not None:
            self.message = message


class ClientError(TranscodeError):
    status_code = 400
    message = "Bad Request"


class RouteNotFound(ClientError):
    status_code = 404
    message = "Not Found"


class InvalidWidth(ClientError):
    message = "Invalid Width"


class UnsafePath(ClientError):
    message = "Invalid file path"


class SourceNotFound(ClientError):
    status_code = 404
    message = "File Not Found"


class ServerError(TranscodeError):
    """Internal failure detected before any response byte was sent."""
