"""Device CRUD, status bookkeeping and metric history."""

import logging
from datetime import UTC, datetime

from sqlmodel import Session, col, select

from fleetline.registry.models import Device, InterfaceMetric, MetricSample
from fleetline.telemetry.rates import InterfaceRate
from fleetline.transport.base import DeviceSnapshot

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def register_device(
    session: Session,
    tenant_id: str,
    name: str,
    host: str,
    username: str,
    password: str,
    port: int = 443,
    use_tls: bool = True,
    enabled: bool = True,
    watch_interfaces: list[str] | None = None,
) -> Device:
    """Register a new router."""
    device = Device(
        tenant_id=tenant_id,
        name=name,
        host=host,
        port=port,
        username=username,
        password=password,
        use_tls=use_tls,
        enabled=enabled,
        watch_interfaces=",".join(watch_interfaces) if watch_interfaces else None,
    )
    session.add(device)
    session.commit()
    session.refresh(device)
    logger.info("Registered device %s (id=%s) at %s", name, device.id, host)
    return device


def get_device(session: Session, device_id: int) -> Device | None:
    """Get a single device by ID."""
    return session.get(Device, device_id)


def list_devices(session: Session, tenant_id: str | None = None) -> list[Device]:
    stmt = select(Device)
    if tenant_id is not None:
        stmt = stmt.where(Device.tenant_id == tenant_id)
    stmt = stmt.order_by(Device.name)
    return list(session.exec(stmt).all())


def list_enabled_devices(session: Session) -> list[Device]:
    """Devices the scheduler should visit on every tick."""
    stmt = select(Device).where(Device.enabled == True).order_by(Device.id)  # noqa: E712
    return list(session.exec(stmt).all())


def in_maintenance(device: Device, now: datetime) -> bool:
    until = as_utc(device.maintenance_until)
    return until is not None and until > now


def set_maintenance(
    session: Session,
    device_id: int,
    until: datetime | None,
    reason: str | None = None,
) -> Device | None:
    """Start (or with ``until=None`` end) a maintenance window."""
    device = session.get(Device, device_id)
    if device is None:
        return None
    device.maintenance_until = until
    device.maintenance_reason = reason if until is not None else None
    device.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(device)
    return device


def mark_online(
    session: Session,
    device: Device,
    now: datetime,
    latency_ms: int | None,
    identity: str | None = None,
    version: str | None = None,
) -> Device:
    device.is_online = True
    device.last_seen_at = now
    device.latency_ms = latency_ms
    device.last_error = None
    if identity is not None:
        device.identity = identity
    if version is not None:
        device.ros_version = version
    device.updated_at = now
    session.add(device)
    session.commit()
    session.refresh(device)
    return device


def mark_offline(
    session: Session, device: Device, now: datetime, error: str, latency_ms: int | None
) -> Device:
    """Record a failed contact. ``last_seen_at`` keeps the last successful contact."""
    device.is_online = False
    device.last_error = error
    device.latency_ms = latency_ms
    device.updated_at = now
    session.add(device)
    session.commit()
    session.refresh(device)
    return device


def offline_for_seconds(device: Device, now: datetime) -> int:
    """Seconds since the last successful contact (or registration)."""
    base = as_utc(device.last_seen_at) or as_utc(device.created_at) or now
    return max(0, int((now - base).total_seconds()))


def record_metric(
    session: Session,
    device_id: int,
    snapshot: DeviceSnapshot,
    rx_bps: int | None = None,
    tx_bps: int | None = None,
) -> MetricSample:
    """Append one MetricSample for a successful snapshot."""
    res = snapshot.resources
    sample = MetricSample(
        device_id=device_id,
        ts=snapshot.observed_at,
        cpu_load=res.cpu_load,
        total_memory_bytes=res.total_memory_bytes,
        free_memory_bytes=res.free_memory_bytes,
        total_hdd_bytes=res.total_hdd_bytes,
        free_hdd_bytes=res.free_hdd_bytes,
        uptime_seconds=res.uptime_seconds,
        rx_bps=rx_bps,
        tx_bps=tx_bps,
    )
    session.add(sample)
    session.commit()
    session.refresh(sample)
    return sample


def list_metrics(session: Session, device_id: int, limit: int = 100) -> list[MetricSample]:
    """Most recent metric samples for a device, newest first."""
    stmt = (
        select(MetricSample)
        .where(MetricSample.device_id == device_id)
        .order_by(MetricSample.ts.desc())  # type: ignore[attr-defined]
        .limit(limit)
    )
    return list(session.exec(stmt).all())


def record_interface_metrics(
    session: Session,
    device_id: int,
    snapshot: DeviceSnapshot,
    rates: dict[str, InterfaceRate],
) -> list[InterfaceMetric]:
    """Append one InterfaceMetric per interface in a successful snapshot."""
    rows: list[InterfaceMetric] = []
    for iface in snapshot.interfaces:
        rate = rates.get(iface.name)
        row = InterfaceMetric(
            device_id=device_id,
            interface_name=iface.name,
            ts=snapshot.observed_at,
            rx_byte=iface.rx_byte,
            tx_byte=iface.tx_byte,
            rx_bps=rate.rx_bps if rate else None,
            tx_bps=rate.tx_bps if rate else None,
            running=iface.running,
            disabled=iface.disabled,
            link_downs=iface.link_downs,
        )
        session.add(row)
        rows.append(row)
    session.commit()
    return rows


def list_interface_metrics(
    session: Session,
    device_id: int,
    interface_name: str | None = None,
    limit: int = 100,
) -> list[InterfaceMetric]:
    """Interface history for a device, newest first, optionally for one interface."""
    stmt = select(InterfaceMetric).where(InterfaceMetric.device_id == device_id)
    if interface_name is not None:
        stmt = stmt.where(InterfaceMetric.interface_name == interface_name)
    stmt = stmt.order_by(col(InterfaceMetric.ts).desc(), col(InterfaceMetric.id).desc())
    return list(session.exec(stmt.limit(limit)).all())


def list_latest_interface_metrics(session: Session, device_id: int) -> list[InterfaceMetric]:
    """The newest sample of each interface, ordered by interface name."""
    stmt = (
        select(InterfaceMetric)
        .where(InterfaceMetric.device_id == device_id)
        .order_by(
            col(InterfaceMetric.interface_name),
            col(InterfaceMetric.ts).desc(),
            col(InterfaceMetric.id).desc(),
        )
    )
    latest: list[InterfaceMetric] = []
    for row in session.exec(stmt).all():
        if not latest or latest[-1].interface_name != row.interface_name:
            latest.append(row)
    return latest
