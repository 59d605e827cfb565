"""Base interface for device transports."""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from fleetline.registry.models import Device


@dataclass
class ResourceMetrics:
    cpu_load: int | None = None  # percent
    total_memory_bytes: int | None = None
    free_memory_bytes: int | None = None
    total_hdd_bytes: int | None = None
    free_hdd_bytes: int | None = None
    uptime_seconds: int | None = None
    board_name: str | None = None
    version: str | None = None


@dataclass
class InterfaceSnapshot:
    name: str
    type: str | None = None
    running: bool | None = None
    disabled: bool | None = None
    dynamic: bool = False
    mtu: int | None = None
    mac_address: str | None = None
    rx_byte: int | None = None
    tx_byte: int | None = None
    rx_packet: int | None = None
    tx_packet: int | None = None
    link_downs: int | None = None


@dataclass
class IpAddress:
    address: str
    network: str | None = None
    interface: str | None = None
    dynamic: bool = False
    disabled: bool = False


@dataclass
class PppSecret:
    """A PPPoE secret as the device reports it."""

    username: str
    secret_id: str | None = None  # device-side row id (".id" on RouterOS)
    profile: str | None = None
    remote_address: str | None = None
    disabled: bool = False
    comment: str | None = None
    password_available: bool = False  # False when the device masks it
    password: str | None = field(default=None, repr=False)


@dataclass
class HealthReading:
    name: str  # e.g. "temperature", "voltage"
    value: float
    unit: str | None = None


@dataclass
class DeviceSnapshot:
    """A single point-in-time read of a device's observable state."""

    observed_at: datetime
    identity: str | None = None
    resources: ResourceMetrics = field(default_factory=ResourceMetrics)
    interfaces: list[InterfaceSnapshot] = field(default_factory=list)
    addresses: list[IpAddress] = field(default_factory=list)
    secrets: list[PppSecret] = field(default_factory=list)
    health: list[HealthReading] = field(default_factory=list)


@dataclass
class PppProfileInfo:
    """A ``/ppp/profile`` entry. Tri-state flags are None when left at "default"."""

    name: str
    local_address: str | None = None
    remote_address: str | None = None
    rate_limit: str | None = None
    dns_server: str | None = None
    only_one: bool | None = None
    change_tcp_mss: bool | None = None
    use_compression: bool | None = None
    use_encryption: bool | None = None
    use_ipv6: bool | None = None
    bridge: str | None = None
    comment: str | None = None


@dataclass
class IpPoolInfo:
    name: str
    ranges: str | None = None
    next_pool: str | None = None
    comment: str | None = None


@dataclass
class ProbeResult:
    identity: str | None
    version: str | None


class AccountOpKind(enum.StrEnum):
    create = "create"
    update = "update"


@dataclass
class AccountOp:
    """One corrective change to a PPPoE secret on a device.

    ``password`` is None on updates that must keep the device's current secret.
    ``remote_address`` already holds the static address or pool name to push.
    """

    kind: AccountOpKind
    username: str
    account_id: int | None = None
    password: str | None = None
    profile: str | None = None
    remote_address: str | None = None
    disabled: bool = False
    comment: str | None = None
    secret_id: str | None = None  # known device row id, for updates


class BaseTransport(ABC):
    """Abstract access to a router's PPPoE secrets, interfaces and health."""

    @abstractmethod
    async def fetch_snapshot(self, device: Device) -> DeviceSnapshot:
        """Read the device's full observable state.

        Raises:
            TransportError: timeout, auth failure or unparseable reply.
        """

    @abstractmethod
    async def probe(self, device: Device) -> ProbeResult:
        """Cheap reachability check returning identity and OS version."""

    @abstractmethod
    async def apply_account_op(self, device: Device, op: AccountOp) -> str | None:
        """Push a create or update. Returns the device-side secret id if known."""

    @abstractmethod
    async def remove_secret(self, device: Device, username: str) -> bool:
        """Delete a secret by username. Returns False if it was not there."""

    @abstractmethod
    async def fetch_ppp_profiles(self, device: Device) -> list[PppProfileInfo]:
        """List the device's PPP profiles."""

    @abstractmethod
    async def fetch_ip_pools(self, device: Device) -> list[IpPoolInfo]:
        """List the device's IP address pools."""

    async def close(self) -> None:
        """Release pooled connections."""
