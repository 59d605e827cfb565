"""Router registration and metric history models."""

from datetime import UTC, datetime

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


class Device(SQLModel, table=True):
    """A registered access-concentrator router."""

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    name: str
    host: str
    port: int = 443
    username: str
    password: str
    use_tls: bool = True
    enabled: bool = True

    # Comma-separated interface names that raise down/flap incidents.
    # None means no interface is watched.
    watch_interfaces: str | None = None

    # Status, written by every pass
    identity: str | None = None
    ros_version: str | None = None
    is_online: bool = False
    last_seen_at: datetime | None = None
    latency_ms: int | None = None
    last_error: str | None = None

    maintenance_until: datetime | None = None
    maintenance_reason: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def watched_interfaces(self) -> set[str]:
        if not self.watch_interfaces:
            return set()
        return {s.strip() for s in self.watch_interfaces.split(",") if s.strip()}


class MetricSample(SQLModel, table=True):
    """Append-only resource sample, one row per device per successful tick."""

    id: int | None = Field(default=None, primary_key=True)
    device_id: int = Field(index=True, foreign_key="device.id")
    ts: datetime = Field(default_factory=lambda: datetime.now(UTC), index=True)
    cpu_load: int | None = None
    total_memory_bytes: int | None = None
    free_memory_bytes: int | None = None
    total_hdd_bytes: int | None = None
    free_hdd_bytes: int | None = None
    uptime_seconds: int | None = None
    rx_bps: int | None = None  # sum of known interface rates
    tx_bps: int | None = None


class InterfaceMetric(SQLModel, table=True):
    """Per-interface counters and derived throughput, one row per interface per tick."""

    __table_args__ = (
        Index("ix_interface_metric_device_iface_ts", "device_id", "interface_name", "ts"),
    )

    id: int | None = Field(default=None, primary_key=True)
    device_id: int = Field(foreign_key="device.id")
    interface_name: str
    ts: datetime
    rx_byte: int | None = None
    tx_byte: int | None = None
    rx_bps: int | None = None  # None until two samples exist
    tx_bps: int | None = None
    running: bool | None = None
    disabled: bool | None = None
    link_downs: int | None = None
