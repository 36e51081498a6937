"""
Tunnel broker client.

Negotiates a temporary proxy endpoint and credentials with the broker for
a session identity:

1. background_init registers the identity and returns a session key, or
   reports that the identity is blocked.
2. zgettunnels returns a small pool of tunnel endpoints for a region
   together with the port map and the agent key used as proxy password.

Negotiation happens once at startup and any failure aborts startup.
Credentials are not rotated while running; restart to renegotiate.
"""

import logging
import random
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple, Union

import httpx

from config import Settings
from errors import BrokerBlockedError, BrokerResponseError
from identity_store import IdentityStore

logger = logging.getLogger(__name__)

# Pretend to be the Firefox extension, which was the last one published
EXT_VER = "1.186.727"
EXT_BROWSER = ("browser", "firefox")
PRODUCT = ("product", "www")
CCGI_URL = "https://client.hola.org/client_cgi/"
BG_INIT_URL = CCGI_URL + "background_init"
ZGETTUNNELS_URL = CCGI_URL + "zgettunnels"
VPN_COUNTRIES_URL = CCGI_URL + "vpn_countries.json"

TUNNEL_LIMIT = 3


class ProxyType(str, Enum):
    DIRECT = "direct"
    # Pooled peer proxies. Accepted by the broker but not known to work.
    LUM = "lum"

    def to_param(self, country: str) -> str:
        if self is ProxyType.LUM:
            country = country.lower()
            return f"{country}.pool_lum_{country}_shared"
        return country

    def port(self, port_map: "PortMap") -> int:
        if self is ProxyType.LUM:
            return port_map.hola
        return port_map.direct


@dataclass
class InitSuccess:
    ver: str
    key: int
    country: str


@dataclass
class InitBlocked:
    country: str
    permanent: bool


InitResult = Union[InitSuccess, InitBlocked]


def parse_init_response(data: dict) -> InitResult:
    """Turn the background_init payload into InitSuccess or InitBlocked"""
    country = data.get("country", "")
    if data.get("blocked") or data.get("permanent"):
        return InitBlocked(country=country, permanent=bool(data.get("permanent")))
    try:
        return InitSuccess(ver=data["ver"], key=int(data["key"]), country=country)
    except (KeyError, TypeError, ValueError) as e:
        raise BrokerResponseError(f"Malformed background_init response: {e}")


@dataclass
class PortMap:
    direct: int
    hola: int = 0
    peer: int = 0
    trial: int = 0
    trial_peer: int = 0


@dataclass
class TunnelResponse:
    agent_key: str
    # (hostname, ip) pairs, in the order the broker listed them
    ip_list: List[Tuple[str, str]]
    port: PortMap

    @classmethod
    def from_dict(cls, data: dict) -> "TunnelResponse":
        try:
            ports = data["port"]
            port_map = PortMap(
                direct=int(ports["direct"]),
                hola=int(ports.get("hola", 0)),
                peer=int(ports.get("peer", 0)),
                trial=int(ports.get("trial", 0)),
                trial_peer=int(ports.get("trial_peer", 0)),
            )
            ip_list = list((data.get("ip_list") or {}).items())
            return cls(agent_key=data["agent_key"], ip_list=ip_list, port=port_map)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise BrokerResponseError(f"Malformed zgettunnels response: {e}")


@dataclass
class TunnelCredential:
    host: str
    port: int
    scheme: str
    login: str
    password: str

    @property
    def proxy_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"

    def to_proxy(self) -> httpx.Proxy:
        return httpx.Proxy(self.proxy_url, auth=(self.login, self.password))


def uuid_to_login(identity: uuid.UUID) -> str:
    """Proxy login for an identity: lowercase hex, no hyphens"""
    return f"user-uuid-{identity.hex}"


def build_credential(hostname: str, ip: str, port: int,
                     identity: uuid.UUID, agent_key: str) -> TunnelCredential:
    """HTTPS to the tunnel hostname when there is one, plain HTTP to its IP otherwise"""
    if hostname:
        host, scheme = hostname, "https"
    else:
        host, scheme = ip, "http"
    return TunnelCredential(
        host=host,
        port=port,
        scheme=scheme,
        login=uuid_to_login(identity),
        password=agent_key,
    )


def select_endpoint(tunnels: TunnelResponse) -> Tuple[str, str]:
    """Pick one (hostname, ip) uniformly at random"""
    if not tunnels.ip_list:
        raise BrokerResponseError("No tunnels found in broker response")
    return random.choice(tunnels.ip_list)


class TunnelBroker:
    def __init__(self, client: httpx.AsyncClient,
                 proxy_type: ProxyType = ProxyType.DIRECT):
        self.client = client
        self.proxy_type = proxy_type

    async def background_init(self, identity: Optional[uuid.UUID] = None) -> Tuple[InitResult, uuid.UUID]:
        """Register with the broker. Generates a random identity unless one is provided."""
        logger.debug(f"background_init using UUID {identity}")
        identity = identity or uuid.uuid4()
        response = await self.client.post(
            BG_INIT_URL,
            params={"uuid": identity.hex},
            data={"login": "1", "ver": EXT_VER},
        )
        response.raise_for_status()
        result = parse_init_response(response.json())
        logger.debug(f"background_init response: {result}")
        return result, identity

    async def get_tunnels(self, identity: uuid.UUID, session_key: int,
                          country: str, limit: int = TUNNEL_LIMIT) -> TunnelResponse:
        params = {
            "country": self.proxy_type.to_param(country),
            "limit": str(limit),
            "ping_id": str(random.random()),
            "ext_ver": EXT_VER,
            EXT_BROWSER[0]: EXT_BROWSER[1],
            PRODUCT[0]: PRODUCT[1],
            "uuid": identity.hex,
            "session_key": str(session_key),
            "is_premium": "0",
        }
        response = await self.client.get(ZGETTUNNELS_URL, params=params)
        response.raise_for_status()
        return TunnelResponse.from_dict(response.json())

    async def negotiate(self, identity: Optional[uuid.UUID],
                        country: str) -> Tuple[TunnelCredential, uuid.UUID]:
        """Obtain a tunnel endpoint and credentials for an identity.

        Transport errors are not retried here; the caller treats any
        failure as fatal.
        """
        init, identity = await self.background_init(identity)
        if isinstance(init, InitBlocked):
            raise BrokerBlockedError(init.country, init.permanent)

        logger.info(f"Broker session established (country={init.country}, ver={init.ver})")
        tunnels = await self.get_tunnels(identity, init.key, country)
        logger.debug(f"Tunnels: {tunnels.ip_list} ports={tunnels.port}")

        hostname, ip = select_endpoint(tunnels)
        credential = build_credential(
            hostname, ip, self.proxy_type.port(tunnels.port), identity, tunnels.agent_key)
        logger.debug(f"login: {credential.login}")
        logger.debug(f"password: {credential.password}")
        logger.info(f"Using {self.proxy_type.value} tunnel {credential.proxy_url}")
        return credential, identity

    async def list_countries(self) -> List[Tuple[str, str]]:
        """Regions the broker offers, as (broker code, ISO alpha-2) pairs"""
        response = await self.client.get(
            VPN_COUNTRIES_URL, headers={EXT_BROWSER[0]: EXT_BROWSER[1]})
        response.raise_for_status()
        codes = response.json()
        # The broker says "uk" for the United Kingdom, whose alpha-2 code is GB.
        # The broker code is what gets passed back as COUNTRY.
        return [(code, "GB" if code.lower() == "uk" else code.upper()) for code in codes]


async def setup_tunnel(settings: Settings,
                       client: Optional[httpx.AsyncClient] = None) -> httpx.Proxy:
    """Negotiate a tunnel and persist the identity used for it.

    The stored identity is reused unless REGEN_CREDS is set, and is written
    back unless DISCARD_CREDS is set.
    """
    store = IdentityStore(settings.CONFIG_DIR)
    record = store.load()
    identity = None if settings.REGEN_CREDS else record.uuid

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(
            timeout=settings.CONNECT_TIMEOUT,
            headers={"User-Agent": settings.DEFAULT_USER_AGENT},
        )
    try:
        broker = TunnelBroker(client, ProxyType(settings.PROXY_TYPE))
        credential, identity = await broker.negotiate(identity, settings.COUNTRY)
    finally:
        if owns_client:
            await client.aclose()

    record.uuid = identity
    if not settings.DISCARD_CREDS:
        store.store(record)
    return credential.to_proxy()
