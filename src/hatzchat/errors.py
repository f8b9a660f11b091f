"""Error types raised by the API client and surfaced by the chat store."""

from __future__ import annotations


class HatzError(Exception):
    """Base class for all client-side failures."""


class TransportError(HatzError):
    """No usable HTTP response was received."""


class HttpError(HatzError):
    """The server answered with a non-2xx status.

    The raw response body is used as the message so it can be shown verbatim.
    """

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(body or f"HTTP {status_code}")


class AuthError(HttpError):
    """The credential was rejected while listing models."""


class DecodeError(HatzError):
    """A response body was not the JSON shape we expected."""


class UploadAmbiguousError(HatzError):
    """An upload succeeded but no file id could be found in the response.

    Not raised out of an upload; returned as a warning alongside the attachment.
    """

    def __init__(self, raw_body: str):
        self.raw_body = raw_body
        super().__init__(
            "Upload succeeded but no file UUID was found in the response.\n\n"
            f"Raw response:\n{raw_body}"
        )
