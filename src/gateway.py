"""
Playback request pipeline.

Turns one inbound manifest request into a manifest fetched through the
upstream proxy:

    StreamRequest -> PlaybackAccessToken (GraphQL) -> usher manifest

Only allow-listed player capability parameters are copied from the
client's query string. The gateway then appends its own session
parameters, so the manifest is requested as the gateway's synthetic
session rather than the client's.
"""

import logging
import random
import re
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config import Settings
from errors import GatewayError, ErrorKind, from_http_error
from resilient_client import ResilientClient

logger = logging.getLogger(__name__)

GQL_URL = "https://gql.twitch.tv/gql"
USHER_BASE = "https://usher.ttvnw.net/"

PLAYBACK_TOKEN_HASH = "0828119ded1c13477966434e15800ff57ddacf13ba1911c129dc2200705b0712"

# Sent by the web player on every usher request; base64 of "{}"
TRACKING_PLACEHOLDER = ("acmb", "e30=")

USER_IP_PLACEHOLDER = 'USER-IP="0.0.0.0"'
_USER_IP_RE = re.compile(r'USER-IP="\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}"')

_ID_ALPHABET = string.ascii_letters + string.digits
_VOD_ID_RE = re.compile(r"[0-9]+")
_MAX_VOD_ID = 2 ** 64 - 1

_rng = random.SystemRandom()


class StreamKind(str, Enum):
    LIVE = "live"
    VOD = "vod"


@dataclass
class StreamRequest:
    kind: StreamKind
    stream_id: str
    incoming_params: List[Tuple[str, str]] = field(default_factory=list)
    user_agent: Optional[str] = None

    @property
    def manifest_url(self) -> str:
        if self.kind is StreamKind.LIVE:
            return f"{USHER_BASE}api/channel/hls/{self.stream_id}.m3u8"
        return f"{USHER_BASE}vod/{self.stream_id}.m3u8"


@dataclass
class PlaybackToken:
    value: str
    signature: str


def generate_id() -> str:
    """32 random alphanumerics, mixed case. Used as Device-ID."""
    return "".join(_rng.choice(_ID_ALPHABET) for _ in range(32))


def generate_session_id() -> str:
    """play_session_id; upstream compares it case-sensitively and expects lowercase"""
    return generate_id().lower()


def substring_between(text: str, start: str, end: str) -> Optional[str]:
    """Text between the first `start` marker and the following `end` marker"""
    begin = text.find(start)
    if begin == -1:
        return None
    begin += len(start)
    stop = text.find(end, begin)
    if stop == -1:
        return None
    return text[begin:stop]


def redact_user_ip(manifest: str) -> str:
    return _USER_IP_RE.sub(USER_IP_PLACEHOLDER, manifest)


def parse_stream_request(kind: StreamKind, raw_id: str,
                         params: Iterable[Tuple[str, str]],
                         user_agent: Optional[str] = None) -> StreamRequest:
    """Validate an inbound stream id. Live channels are case-folded, VOD ids must be unsigned integers."""
    if kind is StreamKind.LIVE:
        stream_id = raw_id.lower()
        if not stream_id:
            raise GatewayError.bad_request("Channel name is empty")
    else:
        if not _VOD_ID_RE.fullmatch(raw_id) or int(raw_id) > _MAX_VOD_ID:
            raise GatewayError.bad_request(f"Invalid VOD id: {raw_id!r}")
        stream_id = raw_id
    return StreamRequest(kind=kind, stream_id=stream_id,
                         incoming_params=list(params), user_agent=user_agent)


def effective_user_agent(inbound: Optional[str], settings: Settings) -> str:
    """Configured override, then the client's own User-Agent, then the default"""
    return settings.USER_AGENT or inbound or settings.DEFAULT_USER_AGENT


def filter_params(params: Iterable[Tuple[str, str]], permitted: Iterable[str]) -> Dict[str, str]:
    allowed = set(permitted)
    return {k: v for k, v in params if k in allowed}


class RequestGateway:
    def __init__(self, client: ResilientClient, settings: Settings):
        self.client = client
        self.settings = settings

    def _headers(self, req: StreamRequest) -> Dict[str, str]:
        return {
            "Client-ID": self.settings.CLIENT_ID,
            "Device-ID": generate_id(),
            "User-Agent": req.user_agent or self.settings.DEFAULT_USER_AGENT,
        }

    def token_request_body(self, req: StreamRequest) -> dict:
        is_live = req.kind is StreamKind.LIVE
        return {
            "operationName": "PlaybackAccessToken",
            "extensions": {
                "persistedQuery": {
                    "version": 1,
                    "sha256Hash": PLAYBACK_TOKEN_HASH,
                },
            },
            "variables": {
                "isLive": is_live,
                "login": req.stream_id if is_live else "",
                "isVod": not is_live,
                "vodID": "" if is_live else req.stream_id,
                "playerType": "site",
            },
        }

    async def fetch_token(self, req: StreamRequest) -> PlaybackToken:
        """Get a fresh playback token for the stream. Never cached."""
        try:
            response = await self.client.post(
                GQL_URL, json=self.token_request_body(req), headers=self._headers(req))
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise from_http_error(e)

        data = payload.get("data") if isinstance(payload, dict) else None
        data = data or {}
        # Field name depends on whether it's a livestream or a VOD.
        # It is null when the channel or VOD doesn't exist.
        token = data.get("streamPlaybackAccessToken") or data.get("videoPlaybackAccessToken")
        if not token or "value" not in token or "signature" not in token:
            raise GatewayError(ErrorKind.UPSTREAM_STATUS, 404,
                               f"No playback token for {req.kind.value} {req.stream_id}")
        return PlaybackToken(value=token["value"], signature=token["signature"])

    def build_manifest_url(self, req: StreamRequest, token: PlaybackToken) -> str:
        """Allow-listed client params first, then the gateway's own, which win on collision"""
        query = filter_params(req.incoming_params, self.settings.PERMITTED_INCOMING_KEYS)
        query.update({
            "p": str(_rng.randint(0, 9_999_999)),
            "play_session_id": generate_session_id(),
            "token": token.value,
            "sig": token.signature,
            TRACKING_PLACEHOLDER[0]: TRACKING_PLACEHOLDER[1],
        })
        return f"{req.manifest_url}?{urlencode(query)}"

    async def fetch_manifest(self, req: StreamRequest, token: PlaybackToken) -> str:
        url = self.build_manifest_url(req, token)
        try:
            response = await self.client.get(
                url, headers={"User-Agent": req.user_agent or self.settings.DEFAULT_USER_AGENT})
        except httpx.HTTPError as e:
            raise from_http_error(e)
        manifest = response.text

        country = substring_between(manifest, 'USER-COUNTRY="', '"')
        logger.info(f"Manifest for {req.kind.value} {req.stream_id} served to country {country or 'unknown'}")

        if self.settings.REDACT_IP:
            manifest = redact_user_ip(manifest)
        return manifest

    async def process(self, req: StreamRequest) -> str:
        token = await self.fetch_token(req)
        return await self.fetch_manifest(req, token)
