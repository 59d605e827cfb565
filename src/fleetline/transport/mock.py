"""In-memory transport for development and testing.

Each registered device gets a small simulated router: a handful of
interfaces whose byte counters grow every fetch, jittering CPU, and a
PPPoE secret table that account operations really change. Failures and
slow replies can be injected per device.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from fleetline.errors import TransportError, TransportTimeout
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

_DEFAULT_INTERFACES = ["ether1", "ether2", "sfp-sfpplus1"]


@dataclass
class SimulatedRouter:
    identity: str
    cpu_load: int = 5
    uptime_seconds: int = 3600
    interfaces: dict[str, InterfaceSnapshot] = field(default_factory=dict)
    secrets: dict[str, PppSecret] = field(default_factory=dict)
    profiles: list[PppProfileInfo] = field(
        default_factory=lambda: [
            PppProfileInfo(name="default"),
            PppProfileInfo(name="10mbps", rate_limit="10M/10M", remote_address="pool-a"),
        ]
    )
    pools: list[IpPoolInfo] = field(
        default_factory=lambda: [IpPoolInfo(name="pool-a", ranges="100.64.0.2-100.64.3.254")]
    )
    next_id: int = 1

    # Fault injection
    unreachable: bool = False
    delay: float = 0.0
    failing_users: set[str] = field(default_factory=set)


class MockTransport(BaseTransport):
    """Simulated routers keyed by device id."""

    def __init__(self, jitter: bool = False) -> None:
        self.jitter = jitter
        self.routers: dict[int, SimulatedRouter] = {}
        self.calls: list[tuple[str, int, str | None]] = []

    def router(self, device: Device) -> SimulatedRouter:
        assert device.id is not None
        sim = self.routers.get(device.id)
        if sim is None:
            sim = SimulatedRouter(identity=device.name)
            for name in _DEFAULT_INTERFACES:
                sim.interfaces[name] = InterfaceSnapshot(
                    name=name,
                    type="ether",
                    running=True,
                    disabled=False,
                    mtu=1500,
                    rx_byte=0,
                    tx_byte=0,
                    rx_packet=0,
                    tx_packet=0,
                    link_downs=0,
                )
            self.routers[device.id] = sim
        return sim

    def add_secret(self, device: Device, secret: PppSecret) -> PppSecret:
        sim = self.router(device)
        stored = replace(secret, secret_id=secret.secret_id or f"*{sim.next_id:X}")
        sim.next_id += 1
        sim.secrets[stored.username] = stored
        return stored

    async def _contact(
        self, device: Device, call: str, username: str | None = None
    ) -> SimulatedRouter:
        sim = self.router(device)
        assert device.id is not None
        self.calls.append((call, device.id, username))
        if sim.delay:
            await asyncio.sleep(sim.delay)
        if sim.unreachable:
            raise TransportTimeout(f"{device.host} did not answer")
        return sim

    async def fetch_snapshot(self, device: Device) -> DeviceSnapshot:
        sim = await self._contact(device, "fetch")
        if self.jitter:
            sim.cpu_load = max(0, min(100, sim.cpu_load + random.randint(-5, 5)))
            for iface in sim.interfaces.values():
                iface.rx_byte = (iface.rx_byte or 0) + random.randint(10_000, 5_000_000)
                iface.tx_byte = (iface.tx_byte or 0) + random.randint(10_000, 1_000_000)
        sim.uptime_seconds += 1

        return DeviceSnapshot(
            observed_at=datetime.now(UTC),
            identity=sim.identity,
            resources=ResourceMetrics(
                cpu_load=sim.cpu_load,
                total_memory_bytes=256 * 1024 * 1024,
                free_memory_bytes=180 * 1024 * 1024,
                total_hdd_bytes=128 * 1024 * 1024,
                free_hdd_bytes=100 * 1024 * 1024,
                uptime_seconds=sim.uptime_seconds,
                board_name="CHR",
                version="7.15 (stable)",
            ),
            interfaces=[replace(i) for i in sim.interfaces.values()],
            addresses=[IpAddress(address=f"{device.host}/24", interface="ether1")],
            secrets=[replace(s) for s in sim.secrets.values()],
            health=[HealthReading(name="temperature", value=41.0, unit="C")],
        )

    async def probe(self, device: Device) -> ProbeResult:
        sim = await self._contact(device, "probe")
        return ProbeResult(identity=sim.identity, version="7.15 (stable)")

    async def apply_account_op(self, device: Device, op: AccountOp) -> str | None:
        sim = await self._contact(device, str(op.kind), op.username)
        logger.debug("Simulated %s: %s %s", device.name, op.kind, op.username)
        if op.username in sim.failing_users:
            raise TransportError(f"device rejected {op.username}")

        if op.kind == AccountOpKind.create:
            stored = self.add_secret(
                device,
                PppSecret(
                    username=op.username,
                    profile=op.profile,
                    remote_address=op.remote_address,
                    disabled=op.disabled,
                    comment=op.comment,
                    password_available=True,
                    password=op.password,
                ),
            )
            return stored.secret_id

        current = sim.secrets.get(op.username)
        if current is None:
            raise TransportError(f"secret {op.username} not found on device")
        sim.secrets[op.username] = replace(
            current,
            profile=op.profile or current.profile,
            remote_address=op.remote_address or current.remote_address,
            comment=op.comment or current.comment,
            disabled=op.disabled,
            password=op.password or current.password,
        )
        return current.secret_id

    async def remove_secret(self, device: Device, username: str) -> bool:
        sim = await self._contact(device, "remove", username)
        return sim.secrets.pop(username, None) is not None

    async def fetch_ppp_profiles(self, device: Device) -> list[PppProfileInfo]:
        sim = await self._contact(device, "profiles")
        return [replace(p) for p in sim.profiles]

    async def fetch_ip_pools(self, device: Device) -> list[IpPoolInfo]:
        sim = await self._contact(device, "pools")
        return [replace(p) for p in sim.pools]
