import uuid
from urllib.parse import parse_qs

import httpx
import pytest

from config import Settings
from errors import BrokerBlockedError, BrokerResponseError
from identity_store import IdentityRecord, IdentityStore
from tunnel_broker import (
    InitBlocked,
    InitSuccess,
    PortMap,
    ProxyType,
    TunnelBroker,
    TunnelResponse,
    build_credential,
    parse_init_response,
    select_endpoint,
    setup_tunnel,
    uuid_to_login,
)

FIXED_UUID = uuid.UUID("12345678-1234-5678-1234-567812345678")

TUNNELS_PAYLOAD = {
    "agent_key": "s3cret-agent-key",
    "agent_types": {},
    "ip_list": {"zagent1.hola.org": "10.0.0.1"},
    "port": {"direct": 22222, "hola": 22223, "peer": 22224, "trial": 22225, "trial_peer": 22226},
    "protocol": {},
    "vendor": {},
    "ztun": {},
}


def broker_transport(init_payload=None, tunnels_payload=None, calls=None):
    init_payload = init_payload or {"ver": "1.186.727", "key": 1234, "country": "RU"}
    tunnels_payload = tunnels_payload or TUNNELS_PAYLOAD
    calls = calls if calls is not None else []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path.endswith("background_init"):
            return httpx.Response(200, json=init_payload)
        if request.url.path.endswith("zgettunnels"):
            return httpx.Response(200, json=tunnels_payload)
        if request.url.path.endswith("vpn_countries.json"):
            return httpx.Response(200, json=["ru", "uk", "us"])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class TestProxyType:
    def test_direct_param_is_bare_region(self):
        assert ProxyType.DIRECT.to_param("ru") == "ru"

    def test_lum_param_uses_pool_naming(self):
        assert ProxyType.LUM.to_param("RU") == "ru.pool_lum_ru_shared"

    def test_port_selection(self):
        ports = PortMap(direct=1, hola=2)
        assert ProxyType.DIRECT.port(ports) == 1
        assert ProxyType.LUM.port(ports) == 2


class TestInitResponse:
    def test_success(self):
        result = parse_init_response({"ver": "1.1", "key": 99, "country": "RU"})
        assert result == InitSuccess(ver="1.1", key=99, country="RU")

    def test_blocked(self):
        result = parse_init_response({"ver": "1.1", "key": 99, "country": "RU", "blocked": True})
        assert result == InitBlocked(country="RU", permanent=False)

    def test_permanent_without_blocked_flag(self):
        result = parse_init_response({"ver": "1.1", "key": 99, "country": "RU", "permanent": True})
        assert isinstance(result, InitBlocked)
        assert result.permanent is True

    def test_missing_key_is_malformed(self):
        with pytest.raises(BrokerResponseError):
            parse_init_response({"ver": "1.1", "country": "RU"})


class TestCredentials:
    def test_login_is_deterministic_lowercase_hex(self):
        login = uuid_to_login(FIXED_UUID)
        assert login == "user-uuid-12345678123456781234567812345678"
        assert uuid_to_login(FIXED_UUID) == login
        upper = uuid.UUID("ABCDEF00-0000-0000-0000-00000000ABCD")
        assert uuid_to_login(upper) == "user-uuid-abcdef0000000000000000000000abcd"

    def test_ip_only_endpoint_uses_http(self):
        credential = build_credential("", "1.2.3.4", 1234, FIXED_UUID, "key")
        assert credential.proxy_url == "http://1.2.3.4:1234"
        assert credential.scheme == "http"

    def test_hostname_endpoint_uses_https(self):
        credential = build_credential("h.example", "1.2.3.4", 4321, FIXED_UUID, "key")
        assert credential.proxy_url == "https://h.example:4321"

    def test_proxy_carries_basic_auth(self):
        credential = build_credential("h.example", "", 4321, FIXED_UUID, "agent")
        proxy = credential.to_proxy()
        assert proxy.url.host == "h.example"
        assert proxy.url.port == 4321
        assert proxy.url.scheme == "https"
        assert credential.login == "user-uuid-12345678123456781234567812345678"
        assert credential.password == "agent"


class TestEndpointSelection:
    def test_empty_list_fails(self):
        tunnels = TunnelResponse(agent_key="k", ip_list=[], port=PortMap(direct=1))
        with pytest.raises(BrokerResponseError):
            select_endpoint(tunnels)

    def test_selection_spreads_across_candidates(self):
        candidates = [("a.example", "1.1.1.1"), ("b.example", "2.2.2.2"), ("", "3.3.3.3")]
        tunnels = TunnelResponse(agent_key="k", ip_list=candidates, port=PortMap(direct=1))
        seen = {select_endpoint(tunnels) for _ in range(200)}
        assert seen == set(candidates)

    def test_tunnel_response_keeps_pairs(self):
        tunnels = TunnelResponse.from_dict(TUNNELS_PAYLOAD)
        assert tunnels.ip_list == [("zagent1.hola.org", "10.0.0.1")]
        assert tunnels.port.direct == 22222
        assert tunnels.agent_key == "s3cret-agent-key"


class TestTunnelBroker:
    @pytest.mark.asyncio
    async def test_negotiate_with_existing_identity(self):
        calls = []
        async with httpx.AsyncClient(transport=broker_transport(calls=calls)) as client:
            credential, identity = await TunnelBroker(client).negotiate(FIXED_UUID, "ru")

        assert identity == FIXED_UUID
        assert credential.login == "user-uuid-12345678123456781234567812345678"
        assert credential.password == "s3cret-agent-key"
        assert credential.proxy_url == "https://zagent1.hola.org:22222"

        init, tunnels = calls
        assert init.method == "POST"
        assert init.url.params["uuid"] == FIXED_UUID.hex
        form = parse_qs(init.content.decode())
        assert form == {"login": ["1"], "ver": ["1.186.727"]}

        assert tunnels.method == "GET"
        assert tunnels.url.params["country"] == "ru"
        assert tunnels.url.params["limit"] == "3"
        assert tunnels.url.params["session_key"] == "1234"
        assert tunnels.url.params["uuid"] == FIXED_UUID.hex
        assert float(tunnels.url.params["ping_id"]) < 1.0

    @pytest.mark.asyncio
    async def test_negotiate_generates_identity(self):
        async with httpx.AsyncClient(transport=broker_transport()) as client:
            _, identity = await TunnelBroker(client).negotiate(None, "ru")
        assert isinstance(identity, uuid.UUID)

    @pytest.mark.asyncio
    async def test_blocked_is_fatal_and_skips_tunnel_list(self):
        calls = []
        transport = broker_transport(
            init_payload={"ver": "1", "key": 1, "country": "RU", "blocked": True, "permanent": True},
            calls=calls)
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(BrokerBlockedError) as exc_info:
                await TunnelBroker(client).negotiate(FIXED_UUID, "ru")
        assert exc_info.value.permanent is True
        assert "REGEN_CREDS" in str(exc_info.value)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_empty_tunnel_list_is_fatal(self):
        payload = dict(TUNNELS_PAYLOAD, ip_list={})
        async with httpx.AsyncClient(transport=broker_transport(tunnels_payload=payload)) as client:
            with pytest.raises(BrokerResponseError):
                await TunnelBroker(client).negotiate(FIXED_UUID, "ru")

    @pytest.mark.asyncio
    async def test_http_errors_propagate(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await TunnelBroker(client).negotiate(FIXED_UUID, "ru")

    @pytest.mark.asyncio
    async def test_list_countries_fixes_uk(self):
        async with httpx.AsyncClient(transport=broker_transport()) as client:
            countries = await TunnelBroker(client).list_countries()
        assert countries == [("ru", "RU"), ("uk", "GB"), ("us", "US")]


class TestSetupTunnel:
    @pytest.mark.asyncio
    async def test_reuses_and_persists_identity(self, tmp_path):
        store = IdentityStore(str(tmp_path))
        store.store(IdentityRecord(uuid=FIXED_UUID))
        calls = []
        settings = Settings(CONFIG_DIR=str(tmp_path))

        async with httpx.AsyncClient(transport=broker_transport(calls=calls)) as client:
            proxy = await setup_tunnel(settings, client)

        assert calls[0].url.params["uuid"] == FIXED_UUID.hex
        assert proxy.url.host == "zagent1.hola.org"
        assert store.load().uuid == FIXED_UUID

    @pytest.mark.asyncio
    async def test_regen_ignores_stored_identity(self, tmp_path):
        store = IdentityStore(str(tmp_path))
        store.store(IdentityRecord(uuid=FIXED_UUID))
        calls = []
        settings = Settings(CONFIG_DIR=str(tmp_path), REGEN_CREDS=True)

        async with httpx.AsyncClient(transport=broker_transport(calls=calls)) as client:
            await setup_tunnel(settings, client)

        used = uuid.UUID(calls[0].url.params["uuid"])
        assert used != FIXED_UUID
        assert store.load().uuid == used

    @pytest.mark.asyncio
    async def test_discard_does_not_write(self, tmp_path):
        settings = Settings(CONFIG_DIR=str(tmp_path), DISCARD_CREDS=True)
        async with httpx.AsyncClient(transport=broker_transport()) as client:
            await setup_tunnel(settings, client)
        assert not (tmp_path / "config.json").exists()

    @pytest.mark.asyncio
    async def test_blocked_does_not_persist(self, tmp_path):
        settings = Settings(CONFIG_DIR=str(tmp_path))
        transport = broker_transport(init_payload={"ver": "1", "key": 1, "country": "RU", "blocked": True})
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(BrokerBlockedError):
                await setup_tunnel(settings, client)
        assert not (tmp_path / "config.json").exists()
