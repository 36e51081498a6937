"""
Error types shared by the gateway and their mapping to HTTP responses.

Everything that can reach a client is normalized to GatewayError before
it crosses the HTTP boundary. Upstream URLs carry the playback token,
its signature and the client-visible IP in their query string, so any
text derived from an upstream failure is redacted first.
"""

import re
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

import httpx


class ErrorKind(str, Enum):
    BAD_REQUEST = "bad_request"
    FORBIDDEN = "forbidden"
    UPSTREAM_STATUS = "upstream_status"
    UPSTREAM_TRANSPORT = "upstream_transport"
    OVERLOADED = "overloaded"
    TIMEOUT = "timeout"
    PROBE = "probe"
    INTERNAL = "internal"


class GatewayError(Exception):
    """Error with a client-visible status code and an already-safe message"""

    def __init__(self, kind: ErrorKind, status_code: int, message: str):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.status_code, "error": self.message}

    @classmethod
    def bad_request(cls, message: str) -> "GatewayError":
        return cls(ErrorKind.BAD_REQUEST, 400, message)

    @classmethod
    def overloaded(cls) -> "GatewayError":
        return cls(ErrorKind.OVERLOADED, 503, "Too many concurrent requests")

    @classmethod
    def timeout(cls) -> "GatewayError":
        return cls(ErrorKind.TIMEOUT, 504, "Request timed out")


class ProbeError(Exception):
    """Deep status check could not complete"""


class BrokerError(Exception):
    """Tunnel broker negotiation failed; the gateway cannot start"""


class BrokerBlockedError(BrokerError):
    def __init__(self, country: str, permanent: bool):
        kind = "permanently" if permanent else "temporarily"
        super().__init__(
            f"Session {kind} blocked by tunnel broker (country={country}). "
            f"Restart with REGEN_CREDS=true to negotiate with a new identity.")
        self.country = country
        self.permanent = permanent


class BrokerResponseError(BrokerError):
    """Broker answered with a structurally unusable response"""


_URL_RE = re.compile(r"(https?://[^\s'\"?#]+)[?#][^\s'\"]*")


def redact_url(url: str) -> str:
    """Strip query string and fragment from a URL"""
    parts = urlsplit(str(url))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def redact_message(text: str) -> str:
    """Strip query strings from every URL embedded in free text"""
    return _URL_RE.sub(r"\1", text)


def from_http_error(exc: Exception) -> GatewayError:
    """Map an outbound HTTP failure to a GatewayError.

    Upstream status codes are preserved so a 404 from the platform
    reaches the client as a 404 rather than a generic 500.
    """
    if isinstance(exc, GatewayError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = (f"Upstream returned {status} for "
                   f"{redact_url(exc.request.url)}")
        return GatewayError(ErrorKind.UPSTREAM_STATUS, status, message)
    if isinstance(exc, httpx.TransportError):
        return GatewayError(ErrorKind.UPSTREAM_TRANSPORT, 502,
                            redact_message(f"Upstream connection failed: {exc}"))
    return GatewayError(ErrorKind.INTERNAL, 500, redact_message(str(exc)))
