"""Fault types, signals and the deduplicated Incident record."""

import enum
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class Severity(enum.StrEnum):
    info = "info"
    warning = "warning"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.info: 0, Severity.warning: 1, Severity.critical: 2}


class FaultType(enum.StrEnum):
    offline = "offline"
    cpu = "cpu"
    latency = "latency"
    interface_down = "interface_down"
    interface_flap = "interface_flap"

    @property
    def base_severity(self) -> Severity:
        return _BASE_SEVERITY[self]

    @property
    def per_interface(self) -> bool:
        return self in (FaultType.interface_down, FaultType.interface_flap)

    def dedup_key(self, device_id: int, interface_name: str | None = None) -> str:
        """Key identifying "the same ongoing fault" across observations.

        Interface faults include the interface name; device-wide faults ignore it.
        """
        if self.per_interface:
            if not interface_name:
                raise ValueError(f"{self} faults need an interface name")
            return f"{device_id}:{self}:{interface_name}"
        return f"{device_id}:{self}"


_BASE_SEVERITY = {
    FaultType.offline: Severity.critical,
    FaultType.cpu: Severity.warning,
    FaultType.latency: Severity.warning,
    FaultType.interface_down: Severity.warning,
    FaultType.interface_flap: Severity.warning,
}


class IncidentStatus(enum.StrEnum):
    open = "open"
    acknowledged = "acknowledged"
    in_progress = "in_progress"
    resolved = "resolved"


@dataclass
class FaultSignal:
    """A classified health observation, not persisted by itself."""

    device_id: int
    fault_type: FaultType
    severity: Severity
    title: str
    message: str
    observed_at: datetime
    interface_name: str | None = None
    value: float | None = None
    threshold: float | None = None

    @property
    def dedup_key(self) -> str:
        return self.fault_type.dedup_key(self.device_id, self.interface_name)


@dataclass
class ClearSignal:
    """The condition behind ``dedup_key`` is no longer observed."""

    device_id: int
    fault_type: FaultType
    observed_at: datetime
    interface_name: str | None = None

    @property
    def dedup_key(self) -> str:
        return self.fault_type.dedup_key(self.device_id, self.interface_name)


class Incident(SQLModel, table=True):
    """Deduplicated record of a fault condition.

    At most one row per (tenant_id, dedup_key) may have ``resolved_at`` NULL;
    resolved rows are history and are never reopened.
    """

    __table_args__ = (
        Index(
            "uq_incident_active_dedup",
            "tenant_id",
            "dedup_key",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
        Index("ix_incident_device_resolved", "device_id", "resolved_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    device_id: int = Field(foreign_key="device.id")
    interface_name: str | None = None
    fault_type: FaultType
    dedup_key: str
    severity: Severity = Severity.warning
    status: IncidentStatus = IncidentStatus.open
    title: str
    message: str
    value_num: float | None = None
    threshold_num: float | None = None
    first_seen_at: datetime
    last_seen_at: datetime
    resolved_at: datetime | None = None
    acked_at: datetime | None = None
    acked_by: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
