"""Turn one device observation into fault and clear signals.

Classification is stateless apart from ``LinkDownTracker``, which remembers
the previous link-down counter per watched interface so flaps can be
measured as a delta between passes.
"""

from dataclasses import dataclass, field
from datetime import datetime

from fleetline.config import Settings
from fleetline.incidents.models import ClearSignal, FaultSignal, FaultType, Severity
from fleetline.registry.models import Device
from fleetline.transport.base import DeviceSnapshot


@dataclass
class Thresholds:
    enabled: bool = True
    cpu_risk: int = 70
    cpu_hot: int = 85
    latency_risk_ms: int = 200
    latency_hot_ms: int = 400
    offline_after_secs: int = 0
    flap_threshold: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "Thresholds":
        return cls(
            enabled=settings.alerting_enabled,
            cpu_risk=settings.cpu_risk,
            cpu_hot=settings.cpu_hot,
            latency_risk_ms=settings.latency_risk_ms,
            latency_hot_ms=settings.latency_hot_ms,
            offline_after_secs=settings.offline_after_secs,
            flap_threshold=settings.flap_threshold,
        )


@dataclass
class Evaluation:
    """Result of classifying one device pass.

    ``resolve_all`` means every open incident of the device should be closed
    (maintenance window or alerting switched off).
    """

    signals: list[FaultSignal] = field(default_factory=list)
    cleared: list[ClearSignal] = field(default_factory=list)
    resolve_all: bool = False


class LinkDownTracker:
    """Last seen ``link_downs`` counter per (device, interface)."""

    def __init__(self) -> None:
        self._last: dict[tuple[int, str], int] = {}

    def delta(self, device_id: int, interface: str, current: int | None) -> int | None:
        """Counter increase since the previous pass, or None when unknown.

        A counter that went backwards (device reboot) restarts the baseline.
        """
        key = (device_id, interface)
        previous = self._last.get(key)
        if current is None:
            return None
        self._last[key] = current
        if previous is None or current < previous:
            return None
        return current - previous

    def forget_device(self, device_id: int) -> None:
        for key in [k for k in self._last if k[0] == device_id]:
            del self._last[key]


def _graded(value: float, hot: float) -> Severity:
    return Severity.critical if value >= hot else Severity.warning


def classify_unreachable(
    device: Device,
    now: datetime,
    offline_for_secs: int,
    thresholds: Thresholds,
    in_maintenance: bool = False,
) -> Evaluation:
    """Signals for a pass whose fetch failed.

    CPU and latency become unknown, so their incidents are cleared. The
    offline incident is only raised once the device has been unreachable
    for ``offline_after_secs``.
    """
    if in_maintenance or not thresholds.enabled:
        return Evaluation(resolve_all=True)

    assert device.id is not None
    ev = Evaluation()
    if offline_for_secs >= thresholds.offline_after_secs:
        ev.signals.append(
            FaultSignal(
                device_id=device.id,
                fault_type=FaultType.offline,
                severity=FaultType.offline.base_severity,
                title="Router offline",
                message=f"{device.name} is unreachable ({offline_for_secs}s).",
                observed_at=now,
                value=float(offline_for_secs),
                threshold=float(thresholds.offline_after_secs),
            )
        )
    for fault in (FaultType.cpu, FaultType.latency):
        ev.cleared.append(ClearSignal(device_id=device.id, fault_type=fault, observed_at=now))
    return ev


def classify_snapshot(
    device: Device,
    snapshot: DeviceSnapshot,
    latency_ms: int | None,
    thresholds: Thresholds,
    links: LinkDownTracker,
    in_maintenance: bool = False,
) -> Evaluation:
    """Signals for a successful pass: clears offline, grades CPU, latency and watched links."""
    if in_maintenance or not thresholds.enabled:
        return Evaluation(resolve_all=True)

    assert device.id is not None
    now = snapshot.observed_at
    ev = Evaluation()
    ev.cleared.append(
        ClearSignal(device_id=device.id, fault_type=FaultType.offline, observed_at=now)
    )

    cpu = snapshot.resources.cpu_load
    if cpu is not None and cpu >= thresholds.cpu_risk:
        ev.signals.append(
            FaultSignal(
                device_id=device.id,
                fault_type=FaultType.cpu,
                severity=_graded(cpu, thresholds.cpu_hot),
                title="High CPU",
                message=f"{device.name} CPU is {cpu}% (threshold: {thresholds.cpu_risk}%).",
                observed_at=now,
                value=float(cpu),
                threshold=float(thresholds.cpu_risk),
            )
        )
    else:
        ev.cleared.append(
            ClearSignal(device_id=device.id, fault_type=FaultType.cpu, observed_at=now)
        )

    if latency_ms is not None and latency_ms >= thresholds.latency_risk_ms:
        ev.signals.append(
            FaultSignal(
                device_id=device.id,
                fault_type=FaultType.latency,
                severity=_graded(latency_ms, thresholds.latency_hot_ms),
                title="High latency",
                message=(
                    f"{device.name} latency is {latency_ms}ms "
                    f"(threshold: {thresholds.latency_risk_ms}ms)."
                ),
                observed_at=now,
                value=float(latency_ms),
                threshold=float(thresholds.latency_risk_ms),
            )
        )
    else:
        ev.cleared.append(
            ClearSignal(device_id=device.id, fault_type=FaultType.latency, observed_at=now)
        )

    interfaces = {i.name: i for i in snapshot.interfaces}
    for name in sorted(device.watched_interfaces()):
        iface = interfaces.get(name)
        if iface is None:
            reason = "is missing from the device"
        elif iface.disabled:
            reason = None
        elif iface.running is False:
            reason = "is not running"
        else:
            reason = None

        if reason is not None:
            ev.signals.append(
                FaultSignal(
                    device_id=device.id,
                    fault_type=FaultType.interface_down,
                    severity=FaultType.interface_down.base_severity,
                    title="Interface down",
                    message=f"{device.name} interface {name} {reason}.",
                    observed_at=now,
                    interface_name=name,
                )
            )
        else:
            ev.cleared.append(
                ClearSignal(
                    device_id=device.id,
                    fault_type=FaultType.interface_down,
                    observed_at=now,
                    interface_name=name,
                )
            )

        if iface is None:
            continue
        flaps = links.delta(device.id, name, iface.link_downs)
        if flaps is None:
            continue
        if flaps >= thresholds.flap_threshold:
            ev.signals.append(
                FaultSignal(
                    device_id=device.id,
                    fault_type=FaultType.interface_flap,
                    severity=FaultType.interface_flap.base_severity,
                    title="Interface flapping",
                    message=(
                        f"{device.name} interface {name} went down {flaps} times "
                        f"(threshold: {thresholds.flap_threshold})."
                    ),
                    observed_at=now,
                    interface_name=name,
                    value=float(flaps),
                    threshold=float(thresholds.flap_threshold),
                )
            )
        else:
            ev.cleared.append(
                ClearSignal(
                    device_id=device.id,
                    fault_type=FaultType.interface_flap,
                    observed_at=now,
                    interface_name=name,
                )
            )

    return ev
