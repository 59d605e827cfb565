"""Incident lifecycle: atomic open-or-refresh, resolve, operator workflow, webhooks."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy import case, literal, update
from sqlmodel import Session, col, select

from fleetline.database import insert_for
from fleetline.errors import InvariantViolation
from fleetline.incidents.models import (
    ClearSignal,
    FaultSignal,
    FaultType,
    Incident,
    IncidentStatus,
    Severity,
)
from fleetline.registry.store import as_utc

logger = logging.getLogger(__name__)

_RANK_WHENS = {s: s.rank for s in Severity}


def get_open_incident(session: Session, tenant_id: str, dedup_key: str) -> Incident | None:
    stmt = select(Incident).where(
        Incident.tenant_id == tenant_id,
        Incident.dedup_key == dedup_key,
        col(Incident.resolved_at).is_(None),
    )
    return session.exec(stmt).first()


def open_or_refresh_incident(
    session: Session, tenant_id: str, signal: FaultSignal
) -> tuple[Incident, bool]:
    """Open a new incident for the signal's dedup key, or refresh the open one.

    The insert runs as INSERT .. ON CONFLICT DO NOTHING against the partial
    unique index on open rows, so two concurrent writers can never both open
    the same key; only the writer whose insert returned a row reports
    ``created``. Otherwise the open row is refreshed with a conditional
    UPDATE that bumps ``last_seen_at`` and the value fields. Severity only
    ever moves up.

    Returns:
        (incident, created) where ``created`` is True for a brand-new row.
    """
    now = signal.observed_at
    insert = insert_for(session)
    new_row = insert(Incident).values(
        tenant_id=tenant_id,
        device_id=signal.device_id,
        interface_name=signal.interface_name,
        fault_type=signal.fault_type,
        dedup_key=signal.dedup_key,
        severity=signal.severity,
        status=IncidentStatus.open,
        title=signal.title,
        message=signal.message,
        value_num=signal.value,
        threshold_num=signal.threshold,
        first_seen_at=now,
        last_seen_at=now,
        created_at=now,
        updated_at=now,
    )
    insert_stmt = new_row.on_conflict_do_nothing(
        index_elements=["tenant_id", "dedup_key"],
        index_where=col(Incident.resolved_at).is_(None),
    ).returning(col(Incident.id))

    old_rank = case(_RANK_WHENS, value=Incident.severity, else_=0)
    severity_type = Incident.__table__.c.severity.type  # type: ignore[attr-defined]
    refresh_stmt = (
        update(Incident)
        .where(
            col(Incident.tenant_id) == tenant_id,
            col(Incident.dedup_key) == signal.dedup_key,
            col(Incident.resolved_at).is_(None),
        )
        .values(
            severity=case(
                (old_rank < signal.severity.rank, literal(signal.severity, severity_type)),
                else_=Incident.severity,
            ),
            title=signal.title,
            message=signal.message,
            value_num=signal.value,
            threshold_num=signal.threshold,
            last_seen_at=case(
                (col(Incident.last_seen_at) < now, now), else_=Incident.last_seen_at
            ),
            updated_at=now,
        )
    )

    # The open row can be resolved between the two statements; the retry then opens anew
    for _ in range(3):
        inserted_id = session.execute(insert_stmt).scalar_one_or_none()
        session.commit()
        if inserted_id is not None:
            incident = session.get(Incident, inserted_id)
            if incident is None:
                raise InvariantViolation(f"incident {signal.dedup_key} vanished after insert")
            logger.info(
                "Incident opened: %s [%s] %s", incident.id, incident.severity, incident.title
            )
            return incident, True

        refreshed = session.execute(refresh_stmt)
        session.commit()
        if refreshed.rowcount:
            incident = get_open_incident(session, tenant_id, signal.dedup_key)
            if incident is not None:
                session.refresh(incident)
                return incident, False

    raise InvariantViolation(f"incident {signal.dedup_key} could not be opened or refreshed")


def get_incident(session: Session, incident_id: int) -> Incident | None:
    return session.get(Incident, incident_id)


def resolve_incident(
    session: Session, incident_id: int, at: datetime | None = None
) -> Incident | None:
    """Resolve an incident. Already-resolved incidents are returned unchanged."""
    now = at or datetime.now(UTC)
    session.execute(
        update(Incident)
        .where(col(Incident.id) == incident_id, col(Incident.resolved_at).is_(None))
        .values(status=IncidentStatus.resolved, resolved_at=now, updated_at=now)
    )
    session.commit()
    incident = session.get(Incident, incident_id)
    if incident is not None:
        session.refresh(incident)
    return incident


def resolve_by_key(
    session: Session, tenant_id: str, dedup_key: str, at: datetime | None = None
) -> int:
    """Resolve the open incident for a dedup key, if any. Returns rows resolved."""
    now = at or datetime.now(UTC)
    result = session.execute(
        update(Incident)
        .where(
            col(Incident.tenant_id) == tenant_id,
            col(Incident.dedup_key) == dedup_key,
            col(Incident.resolved_at).is_(None),
        )
        .values(status=IncidentStatus.resolved, resolved_at=now, updated_at=now)
    )
    session.commit()
    if result.rowcount:
        logger.info("Incident resolved: %s", dedup_key)
    return result.rowcount or 0


def resolve_device_incidents(
    session: Session,
    tenant_id: str,
    device_id: int,
    at: datetime | None = None,
    fault_types: list[FaultType] | None = None,
) -> int:
    """Resolve every open incident of a device, optionally only some fault types."""
    now = at or datetime.now(UTC)
    stmt = update(Incident).where(
        col(Incident.tenant_id) == tenant_id,
        col(Incident.device_id) == device_id,
        col(Incident.resolved_at).is_(None),
    )
    if fault_types is not None:
        stmt = stmt.where(col(Incident.fault_type).in_(fault_types))
    result = session.execute(
        stmt.values(status=IncidentStatus.resolved, resolved_at=now, updated_at=now)
    )
    session.commit()
    return result.rowcount or 0


def has_open_incident(
    session: Session, tenant_id: str, device_id: int, fault_type: FaultType
) -> bool:
    stmt = select(Incident.id).where(
        Incident.tenant_id == tenant_id,
        Incident.device_id == device_id,
        Incident.fault_type == fault_type,
        col(Incident.resolved_at).is_(None),
    )
    return session.exec(stmt).first() is not None


def list_open_incidents(
    session: Session,
    tenant_id: str,
    device_id: int | None = None,
    fault_type: FaultType | None = None,
    severity: Severity | None = None,
    status: IncidentStatus | None = None,
) -> list[Incident]:
    """Active incidents (``resolved_at`` NULL) for a tenant, newest activity first."""
    stmt = select(Incident).where(
        Incident.tenant_id == tenant_id, col(Incident.resolved_at).is_(None)
    )
    if device_id is not None:
        stmt = stmt.where(Incident.device_id == device_id)
    if fault_type is not None:
        stmt = stmt.where(Incident.fault_type == fault_type)
    if severity is not None:
        stmt = stmt.where(Incident.severity == severity)
    if status is not None:
        stmt = stmt.where(Incident.status == status)
    stmt = stmt.order_by(col(Incident.last_seen_at).desc())
    return list(session.exec(stmt).all())


def list_incidents(
    session: Session,
    tenant_id: str,
    device_id: int | None = None,
    dedup_key: str | None = None,
    limit: int = 100,
) -> list[Incident]:
    """Incident timeline including resolved history, newest first."""
    stmt = select(Incident).where(Incident.tenant_id == tenant_id)
    if device_id is not None:
        stmt = stmt.where(Incident.device_id == device_id)
    if dedup_key is not None:
        stmt = stmt.where(Incident.dedup_key == dedup_key)
    stmt = stmt.order_by(col(Incident.first_seen_at).desc(), col(Incident.id).desc()).limit(limit)
    return list(session.exec(stmt).all())


def _active(session: Session, incident_id: int) -> Incident | None:
    incident = session.get(Incident, incident_id)
    if incident is None:
        return None
    if incident.resolved_at is not None:
        raise InvariantViolation(f"incident {incident_id} is resolved")
    return incident


def acknowledge_incident(session: Session, incident_id: int, user_id: str) -> Incident | None:
    """Mark an incident as seen by an operator without resolving it.

    Raises:
        InvariantViolation: the incident is already resolved.
    """
    incident = _active(session, incident_id)
    if incident is None:
        return None
    now = datetime.now(UTC)
    incident.status = IncidentStatus.acknowledged
    incident.acked_at = now
    incident.acked_by = user_id
    incident.updated_at = now
    session.commit()
    session.refresh(incident)
    return incident


def mark_in_progress(session: Session, incident_id: int) -> Incident | None:
    """Raises InvariantViolation if the incident is already resolved."""
    incident = _active(session, incident_id)
    if incident is None:
        return None
    incident.status = IncidentStatus.in_progress
    incident.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(incident)
    return incident


def set_notes(session: Session, incident_id: int, notes: str | None) -> Incident | None:
    incident = session.get(Incident, incident_id)
    if incident is None:
        return None
    incident.notes = notes
    incident.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(incident)
    return incident


def escalate_stale_incidents(
    session: Session, tenant_id: str, after_minutes: int, now: datetime | None = None
) -> list[Incident]:
    """Raise unacknowledged, non-critical incidents older than ``after_minutes`` to critical."""
    now = now or datetime.now(UTC)
    cutoff = now - timedelta(minutes=after_minutes)
    candidates = session.exec(
        select(Incident)
        .where(
            Incident.tenant_id == tenant_id,
            col(Incident.resolved_at).is_(None),
            col(Incident.acked_at).is_(None),
            col(Incident.status).in_([IncidentStatus.open, IncidentStatus.in_progress]),
            Incident.severity != Severity.critical,
            Incident.first_seen_at <= cutoff,
        )
        .order_by(col(Incident.first_seen_at))
        .limit(200)
    ).all()

    escalated: list[Incident] = []
    for incident in candidates:
        # Conditional so a concurrent ack/resolve/escalation wins cleanly
        result = session.execute(
            update(Incident)
            .where(
                col(Incident.id) == incident.id,
                Incident.severity != Severity.critical,
                col(Incident.acked_at).is_(None),
                col(Incident.resolved_at).is_(None),
            )
            .values(severity=Severity.critical, updated_at=now)
        )
        if result.rowcount:
            escalated.append(incident)
    session.commit()
    for incident in escalated:
        session.refresh(incident)
        logger.info(
            "Incident escalated: %s exceeded %d minutes without acknowledgement",
            incident.title,
            after_minutes,
        )
    return escalated


def process_signals(
    session: Session,
    tenant_id: str,
    device_id: int,
    signals: list[FaultSignal],
    cleared: list[ClearSignal],
    correlation_enabled: bool = True,
) -> list[Incident]:
    """Feed one device pass's signals through the deduplicator.

    Offline signals are handled first. While an offline incident is open for
    the device, other fault types are suppressed and their open incidents
    resolved, since the root cause is the outage.

    Returns:
        Incidents newly opened by this pass.
    """
    opened: list[Incident] = []

    def _clear(clear: ClearSignal) -> None:
        resolve_by_key(session, tenant_id, clear.dedup_key, at=clear.observed_at)

    def _raise(signal: FaultSignal) -> None:
        incident, created = open_or_refresh_incident(session, tenant_id, signal)
        if created:
            opened.append(incident)

    for clear in cleared:
        if clear.fault_type == FaultType.offline:
            _clear(clear)
    for signal in signals:
        if signal.fault_type == FaultType.offline:
            _raise(signal)

    suppress = correlation_enabled and has_open_incident(
        session, tenant_id, device_id, FaultType.offline
    )

    for clear in cleared:
        if clear.fault_type != FaultType.offline:
            _clear(clear)
    for signal in signals:
        if signal.fault_type == FaultType.offline:
            continue
        if suppress:
            if resolve_by_key(session, tenant_id, signal.dedup_key, at=signal.observed_at):
                logger.info(
                    "Suppressed %s incident on device %s: offline root cause is active",
                    signal.fault_type,
                    device_id,
                )
            continue
        _raise(signal)

    return opened


def build_webhook_payload(incident: Incident, url: str) -> dict[str, Any]:
    """JSON body announcing a newly opened incident; ``_webhook_url`` is stripped on send."""
    return {
        "event": "incident_opened",
        "timestamp": datetime.now(UTC).isoformat(),
        "incident": {
            "id": incident.id,
            "tenant_id": incident.tenant_id,
            "device_id": incident.device_id,
            "interface_name": incident.interface_name,
            "fault_type": str(incident.fault_type),
            "dedup_key": incident.dedup_key,
            "severity": str(incident.severity),
            "title": incident.title,
            "message": incident.message,
            "value": incident.value_num,
            "threshold": incident.threshold_num,
            "first_seen_at": as_utc(incident.first_seen_at).isoformat(),  # type: ignore[union-attr]
        },
        "_webhook_url": url,
    }


async def dispatch_webhooks(
    payloads: list[dict[str, Any]],
    timeout: float = 10.0,
    client: httpx.AsyncClient | None = None,
) -> list[dict[str, Any]]:
    """POST each payload to its webhook. Best effort: failures are logged and reported.

    Returns:
        One dict per sent payload with keys: incident_id, url, status_code,
        success and, on transport failure, error.
    """
    results: list[dict[str, Any]] = []
    if not payloads:
        return results

    owned = client is None
    http = client or httpx.AsyncClient(timeout=timeout)
    try:
        for payload in payloads:
            url = payload.pop("_webhook_url", None)
            incident_id = payload.get("incident", {}).get("id")
            if not isinstance(url, str) or not url:
                logger.warning("Incident %s: payload has no webhook URL", incident_id)
                continue

            result: dict[str, Any] = {"incident_id": incident_id, "url": url}
            try:
                response = await http.post(url, json=payload)
            except httpx.HTTPError as e:
                logger.error("Incident %s: webhook %s unreachable: %s", incident_id, url, e)
                result.update(status_code=None, success=False, error=str(e))
            else:
                result.update(status_code=response.status_code, success=response.is_success)
                if not response.is_success:
                    logger.warning(
                        "Incident %s: webhook %s answered HTTP %d",
                        incident_id,
                        url,
                        response.status_code,
                    )
            results.append(result)
    finally:
        if owned:
            await http.aclose()

    return results
