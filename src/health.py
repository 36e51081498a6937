"""
Deep status check.

Point an uptime monitor at /truestat/{secret}; it needs to be hit
routinely. Each hit picks a random live featured stream and pushes it
through the whole pipeline, using a freshly built client so warm pooled
connections can't hide a broken proxy. /status only reports the result
of the last check.
"""

import asyncio
import logging
import random
from typing import List, Optional

from config import Settings
from errors import ProbeError
from gateway import GQL_URL, RequestGateway, StreamKind, StreamRequest, generate_id
from resilient_client import ProxyTypes, ResilientClient, build_client

logger = logging.getLogger(__name__)

FEATURED_STREAMS_HASH = "1fc22cf18e3afe09cb56e10181ff25073818b80f07dfca546c8aa3bc1ad15f76"

# Prime Video simulcasts, not regular channels
EXCLUDED_LOGIN_PREFIX = "prime"

# What the web player sends on a normal live request
PROBE_PARAMS = [
    ("player_backend", "mediaplayer"),
    ("supported_codecs", "avc1"),
    ("cdm", "wv"),
    ("player_version", "1.18.0"),
    ("allow_source", "true"),
    ("fast_bread", "true"),
    ("playlist_include_framerate", "true"),
    ("reassignments_supported", "true"),
    ("transcode_mode", "cbr_v1"),
]


class StatusFlag:
    """Process-wide result of the last deep status check"""

    def __init__(self, online: bool = True):
        self._online = online

    def get(self) -> bool:
        return self._online

    def set(self, online: bool):
        self._online = online


def eligible_logins(featured: list) -> List[str]:
    logins = []
    for entry in featured or []:
        stream = (entry or {}).get("stream")
        if not stream:
            continue
        if str(stream.get("type", "")).lower() != "live":
            continue
        login = ((stream.get("broadcaster") or {}).get("login")) or ""
        if not login or login.startswith(EXCLUDED_LOGIN_PREFIX):
            continue
        logins.append(login)
    return logins


def featured_streams_body() -> dict:
    return {
        "operationName": "FeaturedContentCarouselStreams",
        "variables": {
            "language": "en",
            "first": 8,
            "acceptedMature": True,
        },
        "extensions": {
            "persistedQuery": {
                "version": 1,
                "sha256Hash": FEATURED_STREAMS_HASH,
            }
        },
    }


async def find_random_stream(client: ResilientClient, settings: Settings, user_agent: str) -> str:
    response = await client.post(
        GQL_URL,
        json=featured_streams_body(),
        headers={
            "Client-ID": settings.CLIENT_ID,
            "Device-ID": generate_id(),
            "User-Agent": user_agent,
        },
    )
    data = (response.json() or {}).get("data") or {}
    logins = eligible_logins(data.get("featuredStreams"))
    if not logins:
        raise ProbeError("No streams available")
    return random.choice(logins)


class HealthProbe:
    def __init__(self, settings: Settings, status: StatusFlag,
                 proxy: Optional[ProxyTypes] = None, client_factory=None):
        self.settings = settings
        self.status = status
        self.proxy = proxy
        self.client_factory = client_factory or (lambda: build_client(settings, proxy))

    async def deep_status(self) -> bool:
        """Run one full pipeline check and record the result. Only cancellation propagates."""
        # purposefully not reusing the shared client
        client = self.client_factory()
        try:
            user_agent = self.settings.USER_AGENT or self.settings.DEFAULT_USER_AGENT
            login = await find_random_stream(client, self.settings, user_agent)
            req = StreamRequest(kind=StreamKind.LIVE, stream_id=login,
                                incoming_params=list(PROBE_PARAMS), user_agent=user_agent)
            await RequestGateway(client, self.settings).process(req)
        except asyncio.CancelledError:
            logger.error("Status check cancelled before completing")
            self.status.set(False)
            raise
        except Exception as e:
            logger.error(f"Status check failed: {type(e).__name__}: {e}")
            self.status.set(False)
            return False
        finally:
            await client.aclose()

        logger.info(f"Status check passed using channel {login}")
        self.status.set(True)
        return True
