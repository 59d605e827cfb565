"""Per-device reconciliation pipeline and the scheduler loop that drives it.

Scheduled ticks and operator triggers share ``run_pass``. A pass for one
device is sequential (fetch, status, rates, metric, incidents, accounts);
passes for different devices run concurrently, bounded by a semaphore.
A per-device lock keeps a manual trigger from overlapping a scheduled pass
on the same router. Incident webhooks go out as background tasks once the
pass has released its worker slot and device lock.
"""

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy.engine import Engine
from sqlmodel import Session

from fleetline.accounts.models import DesiredAccount
from fleetline.accounts.reconciler import (
    ApplyReport,
    DriftSummary,
    ImportCandidate,
    ImportReport,
    apply_account,
    apply_device,
    delete_account,
    get_account,
    import_secrets,
    load_desired_accounts,
    preview_import,
    reconcile_presence,
    remove_account,
    validate_import_owner,
)
from fleetline.config import Settings
from fleetline.errors import TransportError, TransportTimeout
from fleetline.incidents.classifier import (
    Evaluation,
    LinkDownTracker,
    Thresholds,
    classify_snapshot,
    classify_unreachable,
)
from fleetline.incidents.manager import (
    build_webhook_payload,
    dispatch_webhooks,
    escalate_stale_incidents,
    process_signals,
    resolve_device_incidents,
)
from fleetline.inventory.models import IpPool, PppProfile
from fleetline.inventory.store import sync_ip_pools, sync_ppp_profiles
from fleetline.registry.models import Device
from fleetline.registry.store import (
    get_device,
    in_maintenance,
    list_enabled_devices,
    mark_offline,
    mark_online,
    offline_for_seconds,
    record_interface_metrics,
    record_metric,
)
from fleetline.telemetry.rates import InterfaceRate, RateCalculator
from fleetline.transport.base import BaseTransport, DeviceSnapshot, PppSecret

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TriggerMode(enum.StrEnum):
    test = "test"
    apply = "apply"
    reconcile = "reconcile"


@dataclass
class ConnectionResult:
    """Result of a connection test attempt."""

    success: bool
    message: str
    identity: str | None = None
    version: str | None = None
    latency_ms: int | None = None


@dataclass
class PassResult:
    device_id: int
    mode: TriggerMode
    online: bool
    latency_ms: int | None = None
    error: str | None = None
    metric_id: int | None = None
    opened_incidents: list[int] = field(default_factory=list)
    apply: ApplyReport | None = None
    drift: DriftSummary | None = None
    connection: ConnectionResult | None = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class Orchestrator:
    """Drives device passes on a fixed interval and on demand."""

    def __init__(
        self,
        engine: Engine,
        transport: BaseTransport,
        settings: Settings,
        rates: RateCalculator | None = None,
    ) -> None:
        self.engine = engine
        self.transport = transport
        self.settings = settings
        self.rates = rates or RateCalculator()
        self.links = LinkDownTracker()
        self.thresholds = Thresholds.from_settings(settings)
        self._semaphore = asyncio.Semaphore(max(1, settings.max_workers))
        self._locks: dict[int, asyncio.Lock] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._webhook_tasks: set[asyncio.Task[list[dict[str, Any]]]] = set()

    # --- Lifecycle ---

    async def start(self) -> None:
        logger.info(
            "Starting scheduler (interval=%ds, workers=%d)",
            self.settings.poll_interval,
            self.settings.max_workers,
        )
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        logger.info("Stopping scheduler")
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        for task in list(self._webhook_tasks):
            task.cancel()
        await asyncio.gather(*self._webhook_tasks, return_exceptions=True)
        await self.transport.close()

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.run_tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler tick error")

            await asyncio.sleep(self.settings.poll_interval)

    # --- Entry points ---

    async def run_tick(self) -> list[PassResult]:
        """One scheduled pass over every enabled device, then escalation."""
        with Session(self.engine) as session:
            devices = list_enabled_devices(session)
            device_ids = [d.id for d in devices if d.id is not None]
            tenants = sorted({d.tenant_id for d in devices})

        logger.info("Tick: %d device(s)", len(device_ids))
        outcomes = await asyncio.gather(
            *(self._guarded_pass(device_id) for device_id in device_ids)
        )
        results = [r for r in outcomes if r is not None]

        if self.settings.escalation_enabled:
            with Session(self.engine) as session:
                for tenant_id in tenants:
                    escalate_stale_incidents(session, tenant_id, self.settings.escalation_minutes)
        return results

    async def _guarded_pass(self, device_id: int) -> PassResult | None:
        # One broken device must never take the tick down with it
        try:
            return await self.run_pass(device_id, TriggerMode.reconcile)
        except Exception:
            logger.exception("Device %s pass failed", device_id)
            return None

    async def manual_trigger(self, device_id: int, mode: TriggerMode) -> PassResult | None:
        """Operator-initiated pass. Returns None if the device does not exist."""
        logger.info("Manual %s triggered for device %s", mode, device_id)
        return await self.run_pass(device_id, mode)

    def current_rate(self, device_id: int, interface: str) -> InterfaceRate | None:
        return self.rates.current_rate(device_id, interface)

    # --- Single-account actions, serialized with passes on the same device ---

    async def _call(self, device: Device, call: Awaitable[T]) -> T:
        """Await one transport call under the device timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.settings.device_timeout)
        except TimeoutError as e:
            raise TransportTimeout(
                f"{device.host} did not answer within {self.settings.device_timeout:g}s"
            ) from e

    async def _live_secrets(self, device: Device) -> list[PppSecret]:
        snapshot = await self._call(device, self.transport.fetch_snapshot(device))
        return snapshot.secrets

    async def apply_one(self, account: DesiredAccount) -> ApplyReport:
        """Push one desired account to its router.

        Raises:
            ConfigurationError: the account cannot be pushed as it stands.
            TransportError: the router's secret list could not be read.
        """
        async with self._semaphore, self._lock_for(account.device_id):
            with Session(self.engine) as session:
                device = get_device(session, account.device_id)
                if device is None:
                    raise LookupError(f"device {account.device_id} not found")
                fresh = get_account(session, account.id) if account.id is not None else None
                if fresh is None:
                    raise LookupError(f"account {account.id} not found")
                secrets = await self._live_secrets(device)
                return await apply_account(
                    session, self.transport, device, fresh, secrets, self.settings.device_timeout
                )

    async def remove_one(self, account: DesiredAccount) -> bool:
        async with self._semaphore, self._lock_for(account.device_id):
            with Session(self.engine) as session:
                device = get_device(session, account.device_id)
                fresh = get_account(session, account.id) if account.id is not None else None
                if device is None or fresh is None:
                    raise LookupError(f"account {account.id} not found")
                return await remove_account(
                    session, self.transport, device, fresh, self.settings.device_timeout
                )

    async def import_preview(self, device_id: int) -> list[ImportCandidate] | None:
        async with self._semaphore, self._lock_for(device_id):
            with Session(self.engine) as session:
                device = get_device(session, device_id)
                if device is None:
                    return None
                secrets = await self._live_secrets(device)
                return preview_import(load_desired_accounts(session, device_id), secrets)

    async def delete_one(self, account: DesiredAccount) -> bool:
        """Delete a desired account; its device secret is removed on a best-effort basis."""
        async with self._semaphore, self._lock_for(account.device_id):
            with Session(self.engine) as session:
                device = get_device(session, account.device_id)
                fresh = get_account(session, account.id) if account.id is not None else None
                if device is None or fresh is None:
                    raise LookupError(f"account {account.id} not found")
                return await delete_account(
                    session, self.transport, device, fresh, self.settings.device_timeout
                )

    async def import_accounts(
        self,
        device_id: int,
        usernames: list[str],
        customer_id: str | None = None,
        location_id: str | None = None,
    ) -> ImportReport | None:
        """Adopt the named device secrets as desired accounts.

        Raises:
            ConfigurationError: only one of ``customer_id``/``location_id`` given.
            TransportError: the device's secret list could not be read.
        """
        validate_import_owner(customer_id, location_id)
        async with self._semaphore, self._lock_for(device_id):
            with Session(self.engine) as session:
                device = get_device(session, device_id)
                if device is None:
                    return None
                if not any(u.strip() for u in usernames):
                    return ImportReport(device_id=device_id)
                secrets = await self._live_secrets(device)
                return import_secrets(
                    session, device, secrets, usernames, customer_id, location_id
                )

    async def live_snapshot(self, device_id: int) -> DeviceSnapshot | None:
        """Read a device's current state on demand and record its reachability.

        Raises:
            TransportError: the device could not be read; it is marked offline.
        """
        async with self._semaphore, self._lock_for(device_id):
            with Session(self.engine) as session:
                device = get_device(session, device_id)
                if device is None:
                    return None
                started = time.monotonic()
                try:
                    snapshot = await self._call(device, self.transport.fetch_snapshot(device))
                except TransportError as e:
                    mark_offline(session, device, datetime.now(UTC), str(e), _elapsed_ms(started))
                    raise
                mark_online(
                    session,
                    device,
                    snapshot.observed_at,
                    _elapsed_ms(started),
                    identity=snapshot.identity,
                    version=snapshot.resources.version,
                )
                return snapshot

    async def sync_profiles(self, device_id: int) -> list[PppProfile] | None:
        async with self._semaphore, self._lock_for(device_id):
            with Session(self.engine) as session:
                device = get_device(session, device_id)
                if device is None:
                    return None
                profiles = await self._call(device, self.transport.fetch_ppp_profiles(device))
                return sync_ppp_profiles(session, device, profiles)

    async def sync_pools(self, device_id: int) -> list[IpPool] | None:
        async with self._semaphore, self._lock_for(device_id):
            with Session(self.engine) as session:
                device = get_device(session, device_id)
                if device is None:
                    return None
                pools = await self._call(device, self.transport.fetch_ip_pools(device))
                return sync_ip_pools(session, device, pools)

    # --- The per-device pipeline ---

    def _lock_for(self, device_id: int) -> asyncio.Lock:
        return self._locks.setdefault(device_id, asyncio.Lock())

    async def run_pass(self, device_id: int, mode: TriggerMode) -> PassResult | None:
        webhooks: list[dict[str, Any]] = []
        async with self._semaphore, self._lock_for(device_id):
            with Session(self.engine) as session:
                device = get_device(session, device_id)
                if device is None:
                    return None
                if mode == TriggerMode.test:
                    return await self._test_pass(session, device)
                result = await self._full_pass(session, device, mode, webhooks)
        self._send_webhooks(webhooks)
        return result

    async def _test_pass(self, session: Session, device: Device) -> PassResult:
        assert device.id is not None
        timeout = self.settings.device_timeout
        started = time.monotonic()
        try:
            probe = await asyncio.wait_for(self.transport.probe(device), timeout=timeout)
        except (TransportError, TimeoutError) as e:
            latency = _elapsed_ms(started)
            error = str(e) or f"timed out after {timeout:g}s"
            mark_offline(session, device, datetime.now(UTC), error, latency)
            logger.warning("Connection test failed for %s: %s", device.name, error)
            return PassResult(
                device_id=device.id,
                mode=TriggerMode.test,
                online=False,
                latency_ms=latency,
                error=error,
                connection=ConnectionResult(success=False, message=error, latency_ms=latency),
            )

        latency = _elapsed_ms(started)
        mark_online(
            session,
            device,
            datetime.now(UTC),
            latency,
            identity=probe.identity,
            version=probe.version,
        )
        return PassResult(
            device_id=device.id,
            mode=TriggerMode.test,
            online=True,
            latency_ms=latency,
            connection=ConnectionResult(
                success=True,
                message=f"Connected to {probe.identity or device.host}",
                identity=probe.identity,
                version=probe.version,
                latency_ms=latency,
            ),
        )

    async def _full_pass(
        self,
        session: Session,
        device: Device,
        mode: TriggerMode,
        webhooks: list[dict[str, Any]],
    ) -> PassResult:
        assert device.id is not None
        timeout = self.settings.device_timeout
        started = time.monotonic()
        try:
            snapshot = await asyncio.wait_for(
                self.transport.fetch_snapshot(device), timeout=timeout
            )
        except (TransportError, TimeoutError) as e:
            # No metric and no account work on stale data
            latency = _elapsed_ms(started)
            error = str(e) or f"timed out after {timeout:g}s"
            now = datetime.now(UTC)
            offline_for = offline_for_seconds(device, now)
            mark_offline(session, device, now, error, latency)
            self.rates.forget_device(device.id)
            logger.warning("Device %s (%s) unreachable: %s", device.name, device.host, error)
            evaluation = classify_unreachable(
                device,
                now,
                offline_for,
                self.thresholds,
                in_maintenance=in_maintenance(device, now),
            )
            opened = self._record_evaluation(session, device, evaluation, webhooks)
            return PassResult(
                device_id=device.id,
                mode=mode,
                online=False,
                latency_ms=latency,
                error=error,
                opened_incidents=opened,
            )

        latency = _elapsed_ms(started)
        now = snapshot.observed_at
        mark_online(
            session,
            device,
            now,
            latency,
            identity=snapshot.identity,
            version=snapshot.resources.version,
        )
        rates = self._observe_rates(device.id, snapshot)
        rx_bps, tx_bps = _sum_rates(rates.values())
        metric = record_metric(session, device.id, snapshot, rx_bps=rx_bps, tx_bps=tx_bps)
        record_interface_metrics(session, device.id, snapshot, rates)

        evaluation = classify_snapshot(
            device,
            snapshot,
            latency,
            self.thresholds,
            self.links,
            in_maintenance=in_maintenance(device, now),
        )
        opened = self._record_evaluation(session, device, evaluation, webhooks)

        result = PassResult(
            device_id=device.id,
            mode=mode,
            online=True,
            latency_ms=latency,
            metric_id=metric.id,
            opened_incidents=opened,
        )
        if mode == TriggerMode.apply:
            result.apply = await apply_device(
                session, self.transport, device, snapshot.secrets, timeout
            )
        else:
            result.drift = reconcile_presence(session, device.id, snapshot.secrets, now)

        logger.info("%s (%s) polled in %dms", device.name, device.host, _elapsed_ms(started))
        return result

    def _observe_rates(self, device_id: int, snapshot: DeviceSnapshot) -> dict[str, InterfaceRate]:
        """Feed interface counters to the rate calculator; return the rate per interface."""
        return {
            iface.name: self.rates.observe(
                device_id, iface.name, iface.rx_byte, iface.tx_byte, snapshot.observed_at
            )
            for iface in snapshot.interfaces
        }

    def _record_evaluation(
        self,
        session: Session,
        device: Device,
        evaluation: Evaluation,
        webhooks: list[dict[str, Any]],
    ) -> list[int]:
        assert device.id is not None
        if evaluation.resolve_all:
            resolve_device_incidents(session, device.tenant_id, device.id)
            return []

        opened = process_signals(
            session,
            device.tenant_id,
            device.id,
            evaluation.signals,
            evaluation.cleared,
            correlation_enabled=self.settings.correlation_enabled,
        )
        if opened and self.settings.webhook_url:
            webhooks.extend(build_webhook_payload(i, self.settings.webhook_url) for i in opened)
        return [i.id for i in opened if i.id is not None]

    # --- Webhook delivery, outside the device lock ---

    def _send_webhooks(self, payloads: list[dict[str, Any]]) -> None:
        if not payloads:
            return
        task = asyncio.create_task(self._deliver(payloads))
        self._webhook_tasks.add(task)
        task.add_done_callback(self._webhook_tasks.discard)

    async def _deliver(self, payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
        try:
            return await dispatch_webhooks(payloads, timeout=self.settings.webhook_timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Webhook delivery failed")
            return []

    async def drain_webhooks(self) -> list[dict[str, Any]]:
        """Wait for in-flight webhook deliveries and return their per-payload results."""
        batches = await asyncio.gather(*list(self._webhook_tasks))
        return [result for batch in batches for result in batch]


def _sum_rates(rates: Iterable[InterfaceRate]) -> tuple[int | None, int | None]:
    """Device-wide throughput; unknown interface rates are left out of the sum."""
    rx_total: int | None = None
    tx_total: int | None = None
    for rate in rates:
        if rate.rx_bps is not None:
            rx_total = (rx_total or 0) + rate.rx_bps
        if rate.tx_bps is not None:
            tx_total = (tx_total or 0) + rate.tx_bps
    return rx_total, tx_total
