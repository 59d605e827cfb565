"""RouterOS v7 transport via the REST API (``/rest/...``).

Uses HTTP basic auth with the device's API user. Every failure mode of the
HTTP exchange is mapped onto the ``TransportError`` family so callers never
see httpx exceptions.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from fleetline.errors import (
    TransportAuthError,
    TransportError,
    TransportProtocolError,
    TransportTimeout,
)
from fleetline.registry.models import Device
from fleetline.transport.base import (
    AccountOp,
    AccountOpKind,
    BaseTransport,
    DeviceSnapshot,
    HealthReading,
    InterfaceSnapshot,
    IpAddress,
    IpPoolInfo,
    PppProfileInfo,
    PppSecret,
    ProbeResult,
    ResourceMetrics,
)

logger = logging.getLogger(__name__)

_PPPOE_SERVICES = ("pppoe", "any", "")
_UPTIME_UNITS = {"w": 7 * 24 * 3600, "d": 24 * 3600, "h": 3600, "m": 60, "s": 1}


def parse_uptime(value: str | None) -> int | None:
    """Convert RouterOS uptime (``1w2d3h4m5s``, ``3h12m``) to seconds."""
    if not value:
        return None
    total = 0
    num = ""
    for ch in value.strip():
        if ch.isdigit():
            num += ch
            continue
        total += int(num or 0) * _UPTIME_UNITS.get(ch, 0)
        num = ""
    return total


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("true", "yes", "1", "on"):
        return True
    if text in ("false", "no", "0", "off"):
        return False
    return None


def parse_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_secret(row: dict[str, Any]) -> PppSecret | None:
    """Map a ``/ppp/secret`` row; rows for non-PPPoE services yield None."""
    service = (row.get("service") or "").strip().lower()
    if service not in _PPPOE_SERVICES:
        return None
    name = _clean(row.get("name"))
    if name is None:
        return None
    password = _clean(row.get("password"))
    readable = password is not None and set(password) != {"*"}
    return PppSecret(
        username=name,
        secret_id=_clean(row.get(".id")),
        profile=_clean(row.get("profile")),
        remote_address=_clean(row.get("remote-address")),
        disabled=bool(parse_bool(row.get("disabled"))),
        comment=_clean(row.get("comment")),
        password_available=readable,
        password=password if readable else None,
    )


def parse_interface(row: dict[str, Any]) -> InterfaceSnapshot:
    return InterfaceSnapshot(
        name=_clean(row.get("name")) or "unknown",
        type=_clean(row.get("type")),
        running=parse_bool(row.get("running")),
        disabled=parse_bool(row.get("disabled")),
        dynamic=bool(parse_bool(row.get("dynamic"))),
        mtu=parse_int(row.get("mtu")),
        mac_address=_clean(row.get("mac-address")) or _clean(row.get("actual-mac-address")),
        rx_byte=parse_int(row.get("rx-byte")),
        tx_byte=parse_int(row.get("tx-byte")),
        rx_packet=parse_int(row.get("rx-packet")),
        tx_packet=parse_int(row.get("tx-packet")),
        link_downs=parse_int(row.get("link-downs")),
    )


def parse_resources(row: dict[str, Any]) -> ResourceMetrics:
    return ResourceMetrics(
        cpu_load=parse_int(row.get("cpu-load")),
        total_memory_bytes=parse_int(row.get("total-memory")),
        free_memory_bytes=parse_int(row.get("free-memory")),
        total_hdd_bytes=parse_int(row.get("total-hdd-space")),
        free_hdd_bytes=parse_int(row.get("free-hdd-space")),
        uptime_seconds=parse_uptime(row.get("uptime")),
        board_name=_clean(row.get("board-name")),
        version=_clean(row.get("version")),
    )


def parse_profile(row: dict[str, Any]) -> PppProfileInfo | None:
    name = _clean(row.get("name"))
    if name is None:
        return None
    return PppProfileInfo(
        name=name,
        local_address=_clean(row.get("local-address")),
        remote_address=_clean(row.get("remote-address")),
        rate_limit=_clean(row.get("rate-limit")),
        dns_server=_clean(row.get("dns-server")),
        only_one=parse_bool(row.get("only-one")),
        change_tcp_mss=parse_bool(row.get("change-tcp-mss")),
        use_compression=parse_bool(row.get("use-compression")),
        use_encryption=parse_bool(row.get("use-encryption")),
        use_ipv6=parse_bool(row.get("use-ipv6")),
        bridge=_clean(row.get("bridge")),
        comment=_clean(row.get("comment")),
    )


def parse_pool(row: dict[str, Any]) -> IpPoolInfo | None:
    name = _clean(row.get("name"))
    if name is None:
        return None
    return IpPoolInfo(
        name=name,
        ranges=_clean(row.get("ranges")),
        next_pool=_clean(row.get("next-pool")),
        comment=_clean(row.get("comment")),
    )


def parse_health(data: Any) -> list[HealthReading]:
    """RouterOS 7 returns one row per sensor; older builds return a single dict."""
    readings: list[HealthReading] = []
    if isinstance(data, list):
        for row in data:
            value = parse_float(row.get("value"))
            name = _clean(row.get("name"))
            if name and value is not None:
                readings.append(HealthReading(name=name, value=value, unit=_clean(row.get("type"))))
    elif isinstance(data, dict):
        for key in ("temperature", "board-temperature1", "cpu-temperature", "voltage"):
            value = parse_float(data.get(key))
            if value is not None:
                readings.append(HealthReading(name=key, value=value))
    return readings


def _secret_body(op: AccountOp) -> dict[str, str]:
    body: dict[str, str] = {"disabled": "true" if op.disabled else "false"}
    if op.kind == AccountOpKind.create:
        body["name"] = op.username
        body["service"] = "pppoe"
    if op.password is not None:
        body["password"] = op.password
    if op.profile:
        body["profile"] = op.profile
    if op.remote_address:
        body["remote-address"] = op.remote_address
    if op.comment:
        body["comment"] = op.comment
    return body


class RouterOSTransport(BaseTransport):
    """Talks to RouterOS devices over HTTPS (or HTTP) REST."""

    def __init__(self, timeout: float = 10.0, verify: bool = False) -> None:
        self.timeout = timeout
        # Routers ship self-signed certificates; verification is opt-in.
        self.verify = verify

    def _client(self, device: Device) -> httpx.AsyncClient:
        scheme = "https" if device.use_tls else "http"
        return httpx.AsyncClient(
            base_url=f"{scheme}://{device.host}:{device.port}/rest",
            auth=httpx.BasicAuth(device.username, device.password),
            verify=self.verify,
            timeout=self.timeout,
        )

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        try:
            resp = await client.request(method, path, **kwargs)
            resp.raise_for_status()
            if not resp.content:
                return None
            return resp.json()
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"{method} {path} timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise TransportAuthError(f"authentication rejected (HTTP {status})") from e
            detail = _error_detail(e.response)
            raise TransportProtocolError(f"{method} {path} failed: HTTP {status} {detail}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path}: {e}") from e
        except ValueError as e:
            raise TransportProtocolError(f"{method} {path}: invalid JSON reply") from e

    async def fetch_snapshot(self, device: Device) -> DeviceSnapshot:
        async with self._client(device) as client:
            identity = await self._request(client, "GET", "/system/identity")
            resource = await self._request(client, "GET", "/system/resource")
            interfaces = await self._request(client, "GET", "/interface")
            addresses = await self._request(client, "GET", "/ip/address")
            secrets = await self._request(client, "GET", "/ppp/secret")
            try:
                health = await self._request(client, "GET", "/system/health")
            except TransportProtocolError:
                # Virtual routers (CHR) have no health sensors.
                health = None

        if not isinstance(resource, dict) or not isinstance(interfaces, list):
            raise TransportProtocolError("unexpected reply shape from resource or interface list")

        snapshot = DeviceSnapshot(
            observed_at=datetime.now(UTC),
            identity=_clean((identity or {}).get("name")),
            resources=parse_resources(resource),
            interfaces=sorted(
                (parse_interface(row) for row in interfaces), key=lambda i: i.name.lower()
            ),
            addresses=[
                IpAddress(
                    address=row.get("address", ""),
                    network=_clean(row.get("network")),
                    interface=_clean(row.get("interface")),
                    dynamic=bool(parse_bool(row.get("dynamic"))),
                    disabled=bool(parse_bool(row.get("disabled"))),
                )
                for row in addresses or []
            ],
            secrets=[s for s in (parse_secret(row) for row in secrets or []) if s is not None],
            health=parse_health(health),
        )
        logger.debug(
            "Fetched %s: %d interfaces, %d secrets",
            device.host,
            len(snapshot.interfaces),
            len(snapshot.secrets),
        )
        return snapshot

    async def probe(self, device: Device) -> ProbeResult:
        async with self._client(device) as client:
            identity = await self._request(client, "GET", "/system/identity")
            resource = await self._request(client, "GET", "/system/resource")
        return ProbeResult(
            identity=_clean((identity or {}).get("name")),
            version=_clean((resource or {}).get("version")),
        )

    async def _find_secret_id(self, client: httpx.AsyncClient, username: str) -> str | None:
        rows = await self._request(client, "GET", "/ppp/secret", params={"name": username})
        for row in rows or []:
            if row.get("name") == username:
                return _clean(row.get(".id"))
        return None

    async def apply_account_op(self, device: Device, op: AccountOp) -> str | None:
        body = _secret_body(op)
        async with self._client(device) as client:
            if op.kind == AccountOpKind.create:
                created = await self._request(client, "PUT", "/ppp/secret", json=body)
                return _clean((created or {}).get(".id"))
            secret_id = op.secret_id or await self._find_secret_id(client, op.username)
            if secret_id is None:
                raise TransportProtocolError(f"secret {op.username} not found on device")
            await self._request(client, "PATCH", f"/ppp/secret/{secret_id}", json=body)
        return secret_id

    async def remove_secret(self, device: Device, username: str) -> bool:
        async with self._client(device) as client:
            secret_id = await self._find_secret_id(client, username)
            if secret_id is None:
                return False
            await self._request(client, "DELETE", f"/ppp/secret/{secret_id}")
        return True

    async def _list(self, device: Device, path: str) -> list[dict[str, Any]]:
        async with self._client(device) as client:
            rows = await self._request(client, "GET", path)
        if not isinstance(rows, list):
            raise TransportProtocolError(f"unexpected reply shape from {path}")
        return rows

    async def fetch_ppp_profiles(self, device: Device) -> list[PppProfileInfo]:
        rows = await self._list(device, "/ppp/profile")
        return [p for p in (parse_profile(row) for row in rows) if p is not None]

    async def fetch_ip_pools(self, device: Device) -> list[IpPoolInfo]:
        rows = await self._list(device, "/ip/pool")
        return [p for p in (parse_pool(row) for row in rows) if p is not None]


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("message") or "")
    return ""
