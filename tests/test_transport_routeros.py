"""Tests for the RouterOS REST transport and its reply parsers."""

import json

import httpx
import pytest

from fleetline.errors import (
    TransportAuthError,
    TransportError,
    TransportProtocolError,
    TransportTimeout,
)
from fleetline.registry.models import Device
from fleetline.transport.base import AccountOp, AccountOpKind
from fleetline.transport.routeros import (
    RouterOSTransport,
    parse_bool,
    parse_health,
    parse_interface,
    parse_pool,
    parse_profile,
    parse_secret,
    parse_uptime,
)

RESOURCE = {
    "cpu-load": "12",
    "free-memory": "200000000",
    "total-memory": "268435456",
    "free-hdd-space": "90000000",
    "total-hdd-space": "134217728",
    "uptime": "1w2d3h4m5s",
    "board-name": "CCR2004-1G-12S+2XS",
    "version": "7.15.2 (stable)",
}

INTERFACES = [
    {
        ".id": "*2",
        "name": "sfp-sfpplus1",
        "type": "ether",
        "running": "true",
        "disabled": "false",
        "rx-byte": "1000",
        "tx-byte": "2000",
        "link-downs": "4",
    },
    {
        ".id": "*1",
        "name": "ether1",
        "type": "ether",
        "running": "false",
        "disabled": "false",
        "rx-byte": "10",
        "tx-byte": "20",
        "link-downs": "0",
    },
]

SECRETS = [
    {".id": "*A", "name": "alice", "service": "pppoe", "profile": "10mbps", "password": "***"},
    {".id": "*B", "name": "bob", "service": "any", "disabled": "true"},
    {".id": "*C", "name": "l2tp-user", "service": "l2tp"},
]


def make_device() -> Device:
    return Device(
        id=1,
        tenant_id="t1",
        name="R1",
        host="192.0.2.1",
        port=443,
        username="api",
        password="pw",
    )


class FakeRouterOS(RouterOSTransport):
    """RouterOS transport whose HTTP exchanges are served by a handler."""

    def __init__(self, handler) -> None:
        super().__init__(timeout=1.0)
        self.handler = handler

    def _client(self, device: Device) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=f"https://{device.host}:{device.port}/rest",
            auth=httpx.BasicAuth(device.username, device.password),
            transport=httpx.MockTransport(self.handler),
        )


def routes(table: dict[tuple[str, str], httpx.Response], seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        key = (request.method, request.url.path)
        if key not in table:
            return httpx.Response(404, json={"detail": "no such command"})
        return table[key]

    return handler


def full_router():
    table = {
        ("GET", "/rest/system/identity"): httpx.Response(200, json={"name": "core-1"}),
        ("GET", "/rest/system/resource"): httpx.Response(200, json=RESOURCE),
        ("GET", "/rest/interface"): httpx.Response(200, json=INTERFACES),
        ("GET", "/rest/ip/address"): httpx.Response(
            200, json=[{"address": "10.0.0.1/24", "network": "10.0.0.0", "interface": "ether1"}]
        ),
        ("GET", "/rest/ppp/secret"): httpx.Response(200, json=SECRETS),
        ("GET", "/rest/system/health"): httpx.Response(
            200, json=[{"name": "temperature", "value": "41", "type": "C"}]
        ),
    }
    return table


class TestParsers:
    def test_uptime(self):
        assert parse_uptime("1w2d3h4m5s") == 7 * 86400 + 2 * 86400 + 3 * 3600 + 4 * 60 + 5
        assert parse_uptime("3h12m") == 3 * 3600 + 12 * 60
        assert parse_uptime("") is None
        assert parse_uptime(None) is None

    def test_bool(self):
        assert parse_bool("true") is True
        assert parse_bool("no") is False
        assert parse_bool(True) is True
        assert parse_bool("maybe") is None

    def test_secret_service_filter(self):
        assert parse_secret({"name": "x", "service": "l2tp"}) is None
        assert parse_secret({"name": "x", "service": "pppoe"}).username == "x"
        assert parse_secret({"name": "x"}).username == "x"

    def test_masked_password_is_unavailable(self):
        assert parse_secret({"name": "x", "password": "***"}).password_available is False
        assert parse_secret({"name": "x", "password": "hunter2"}).password_available is True

    def test_readable_password_is_kept(self):
        assert parse_secret({"name": "x", "password": "hunter2"}).password == "hunter2"
        assert parse_secret({"name": "x", "password": "***"}).password is None
        assert parse_secret({"name": "x"}).password is None

    def test_profile(self):
        profile = parse_profile(
            {
                ".id": "*1",
                "name": "10mbps",
                "rate-limit": "10M/10M",
                "remote-address": "pool-a",
                "only-one": "yes",
                "use-encryption": "default",
            }
        )
        assert profile.name == "10mbps"
        assert profile.rate_limit == "10M/10M"
        assert profile.only_one is True
        assert profile.use_encryption is None
        assert parse_profile({"rate-limit": "1M/1M"}) is None

    def test_pool(self):
        pool = parse_pool({"name": "pool-a", "ranges": "100.64.0.2-100.64.3.254"})
        assert pool.ranges == "100.64.0.2-100.64.3.254"
        assert pool.next_pool is None
        assert parse_pool({"name": " "}) is None

    def test_interface_counters(self):
        iface = parse_interface(INTERFACES[0])
        assert iface.running is True
        assert iface.rx_byte == 1000
        assert iface.link_downs == 4

    def test_interface_garbage_counter_is_unknown(self):
        assert parse_interface({"name": "e1", "rx-byte": "n/a"}).rx_byte is None

    def test_health_formats(self):
        rows = parse_health([{"name": "temperature", "value": "41", "type": "C"}])
        assert rows[0].value == 41.0
        assert rows[0].unit == "C"
        legacy = parse_health({"temperature": "39", "voltage": "24.1"})
        assert {r.name for r in legacy} == {"temperature", "voltage"}
        assert parse_health(None) == []


class TestFetchSnapshot:
    @pytest.mark.asyncio
    async def test_full_snapshot(self):
        transport = FakeRouterOS(routes(full_router()))
        snap = await transport.fetch_snapshot(make_device())
        assert snap.identity == "core-1"
        assert snap.resources.cpu_load == 12
        assert snap.resources.version == "7.15.2 (stable)"
        assert [i.name for i in snap.interfaces] == ["ether1", "sfp-sfpplus1"]
        assert [s.username for s in snap.secrets] == ["alice", "bob"]
        assert snap.secrets[1].disabled is True
        assert snap.addresses[0].interface == "ether1"
        assert snap.health[0].name == "temperature"

    @pytest.mark.asyncio
    async def test_missing_health_is_tolerated(self):
        table = full_router()
        del table[("GET", "/rest/system/health")]
        snap = await FakeRouterOS(routes(table)).fetch_snapshot(make_device())
        assert snap.health == []

    @pytest.mark.asyncio
    async def test_auth_rejected(self):
        table = full_router()
        table[("GET", "/rest/system/identity")] = httpx.Response(401, json={"error": 401})
        with pytest.raises(TransportAuthError):
            await FakeRouterOS(routes(table)).fetch_snapshot(make_device())

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportTimeout):
            await FakeRouterOS(handler).fetch_snapshot(make_device())

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError) as exc:
            await FakeRouterOS(handler).fetch_snapshot(make_device())
        assert not isinstance(exc.value, TransportTimeout)

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        table = full_router()
        table[("GET", "/rest/system/resource")] = httpx.Response(200, text="<html>")
        with pytest.raises(TransportProtocolError):
            await FakeRouterOS(routes(table)).fetch_snapshot(make_device())

    @pytest.mark.asyncio
    async def test_unexpected_shape(self):
        table = full_router()
        table[("GET", "/rest/interface")] = httpx.Response(200, json={"oops": True})
        with pytest.raises(TransportProtocolError):
            await FakeRouterOS(routes(table)).fetch_snapshot(make_device())

    @pytest.mark.asyncio
    async def test_identity_and_version(self):
        result = await FakeRouterOS(routes(full_router())).probe(make_device())
        assert result.identity == "core-1"
        assert result.version == "7.15.2 (stable)"


class TestAccountOps:
    @pytest.mark.asyncio
    async def test_create_puts_secret(self):
        seen: list[httpx.Request] = []
        table = {("PUT", "/rest/ppp/secret"): httpx.Response(201, json={".id": "*D"})}
        transport = FakeRouterOS(routes(table, seen))
        op = AccountOp(
            kind=AccountOpKind.create,
            username="carol",
            password="pw",
            profile="10mbps",
            remote_address="pool-a",
        )
        assert await transport.apply_account_op(make_device(), op) == "*D"
        body = json.loads(seen[0].content)
        assert body == {
            "name": "carol",
            "service": "pppoe",
            "password": "pw",
            "profile": "10mbps",
            "remote-address": "pool-a",
            "disabled": "false",
        }

    @pytest.mark.asyncio
    async def test_update_patches_without_password(self):
        seen: list[httpx.Request] = []
        table = {("PATCH", "/rest/ppp/secret/*A"): httpx.Response(200, json={".id": "*A"})}
        transport = FakeRouterOS(routes(table, seen))
        op = AccountOp(
            kind=AccountOpKind.update, username="alice", profile="20mbps", secret_id="*A"
        )
        assert await transport.apply_account_op(make_device(), op) == "*A"
        body = json.loads(seen[0].content)
        assert "password" not in body
        assert "name" not in body
        assert body["profile"] == "20mbps"

    @pytest.mark.asyncio
    async def test_update_looks_up_secret_id(self):
        table = {
            ("GET", "/rest/ppp/secret"): httpx.Response(200, json=[SECRETS[0]]),
            ("PATCH", "/rest/ppp/secret/*A"): httpx.Response(200, json={}),
        }
        transport = FakeRouterOS(routes(table))
        op = AccountOp(kind=AccountOpKind.update, username="alice", disabled=True)
        assert await transport.apply_account_op(make_device(), op) == "*A"

    @pytest.mark.asyncio
    async def test_update_of_missing_secret(self):
        table = {("GET", "/rest/ppp/secret"): httpx.Response(200, json=[])}
        op = AccountOp(kind=AccountOpKind.update, username="ghost")
        with pytest.raises(TransportProtocolError):
            await FakeRouterOS(routes(table)).apply_account_op(make_device(), op)

    @pytest.mark.asyncio
    async def test_device_rejection_is_protocol_error(self):
        table = {
            ("PUT", "/rest/ppp/secret"): httpx.Response(
                400,
                json={"error": 400, "detail": "failure: secret with the same name already exists"},
            )
        }
        op = AccountOp(kind=AccountOpKind.create, username="alice", password="pw")
        with pytest.raises(TransportProtocolError) as exc:
            await FakeRouterOS(routes(table)).apply_account_op(make_device(), op)
        assert "already exists" in str(exc.value)

    @pytest.mark.asyncio
    async def test_remove(self):
        table = {
            ("GET", "/rest/ppp/secret"): httpx.Response(200, json=[SECRETS[0]]),
            ("DELETE", "/rest/ppp/secret/*A"): httpx.Response(204),
        }
        assert await FakeRouterOS(routes(table)).remove_secret(make_device(), "alice") is True

    @pytest.mark.asyncio
    async def test_remove_absent(self):
        table = {("GET", "/rest/ppp/secret"): httpx.Response(200, json=[])}
        assert await FakeRouterOS(routes(table)).remove_secret(make_device(), "ghost") is False

    def test_only_create_and_update_are_pushed(self):
        # Removal goes through remove_secret, never through an account op
        assert set(AccountOpKind) == {AccountOpKind.create, AccountOpKind.update}


class TestInventoryFetch:
    @pytest.mark.asyncio
    async def test_profiles(self):
        table = {
            ("GET", "/rest/ppp/profile"): httpx.Response(
                200,
                json=[
                    {".id": "*0", "name": "default", "only-one": "default"},
                    {".id": "*1", "name": "10mbps", "rate-limit": "10M/10M"},
                    {".id": "*2"},
                ],
            )
        }
        profiles = await FakeRouterOS(routes(table)).fetch_ppp_profiles(make_device())
        assert [p.name for p in profiles] == ["default", "10mbps"]
        assert profiles[0].only_one is None
        assert profiles[1].rate_limit == "10M/10M"

    @pytest.mark.asyncio
    async def test_pools(self):
        table = {
            ("GET", "/rest/ip/pool"): httpx.Response(
                200, json=[{"name": "pool-a", "ranges": "10.1.0.2-10.1.0.254", "next-pool": "b"}]
            )
        }
        [pool] = await FakeRouterOS(routes(table)).fetch_ip_pools(make_device())
        assert pool.next_pool == "b"

    @pytest.mark.asyncio
    async def test_non_list_reply_is_protocol_error(self):
        table = {("GET", "/rest/ip/pool"): httpx.Response(200, json={"name": "pool-a"})}
        with pytest.raises(TransportProtocolError):
            await FakeRouterOS(routes(table)).fetch_ip_pools(make_device())
