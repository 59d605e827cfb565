"""REST API endpoints."""

from dataclasses import replace
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlmodel import Session

from fleetline.accounts.models import DesiredAccount
from fleetline.accounts.reconciler import (
    ApplyReport,
    ImportCandidate,
    ImportReport,
    create_account,
    get_account,
    load_desired_accounts,
    update_account,
)
from fleetline.database import get_session
from fleetline.errors import ConfigurationError, InvariantViolation, TransportError
from fleetline.incidents.manager import (
    acknowledge_incident,
    get_incident,
    list_incidents,
    list_open_incidents,
    mark_in_progress,
    resolve_incident,
    set_notes,
)
from fleetline.incidents.models import FaultType, Incident, IncidentStatus, Severity
from fleetline.poller.orchestrator import Orchestrator, PassResult, TriggerMode
from fleetline.inventory.models import IpPool, PppProfile
from fleetline.inventory.store import list_ip_pools, list_ppp_profiles
from fleetline.registry.models import InterfaceMetric, MetricSample
from fleetline.registry.store import (
    get_device,
    list_devices,
    list_interface_metrics,
    list_latest_interface_metrics,
    list_metrics,
    register_device,
    set_maintenance,
)
from fleetline.telemetry.rates import InterfaceRate
from fleetline.transport.base import DeviceSnapshot

router = APIRouter(prefix="/api")


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return orchestrator


# Request models
class RegisterDeviceRequest(BaseModel):
    tenant_id: str
    name: str
    host: str
    username: str
    password: str
    port: int = 443
    use_tls: bool = True
    enabled: bool = True
    watch_interfaces: list[str] | None = None


class MaintenanceRequest(BaseModel):
    until: datetime | None = None
    reason: str | None = None


class CreateAccountRequest(BaseModel):
    username: str
    password: str
    profile: str | None = None
    remote_address: str | None = None
    address_pool: str | None = None
    disabled: bool = False
    comment: str | None = None
    customer_id: str | None = None
    location_id: str | None = None


class UpdateAccountRequest(BaseModel):
    password: str | None = None
    profile: str | None = None
    remote_address: str | None = None
    address_pool: str | None = None
    disabled: bool | None = None
    comment: str | None = None
    customer_id: str | None = None
    location_id: str | None = None


class ImportRequest(BaseModel):
    usernames: list[str]
    customer_id: str | None = None
    location_id: str | None = None


class AcknowledgeRequest(BaseModel):
    user_id: str


class NotesRequest(BaseModel):
    notes: str | None = None


# Response models
class DevicePublic(BaseModel):
    """Device as returned by the API; credentials stay server-side."""

    id: int
    tenant_id: str
    name: str
    host: str
    port: int
    username: str
    use_tls: bool
    enabled: bool
    watch_interfaces: str | None = None
    identity: str | None = None
    ros_version: str | None = None
    is_online: bool
    last_seen_at: datetime | None = None
    latency_ms: int | None = None
    last_error: str | None = None
    maintenance_until: datetime | None = None
    maintenance_reason: str | None = None


class AccountPublic(BaseModel):
    id: int
    tenant_id: str
    device_id: int
    customer_id: str | None = None
    location_id: str | None = None
    username: str
    password_pending: bool
    profile: str | None = None
    remote_address: str | None = None
    address_pool: str | None = None
    disabled: bool
    comment: str | None = None
    router_present: bool
    router_secret_id: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None


# --- Devices ---


@router.get("/devices")
def list_all_devices(
    tenant_id: str | None = None,
    session: Session = Depends(get_session),
) -> list[DevicePublic]:
    return list_devices(session, tenant_id=tenant_id)  # type: ignore[return-value]


@router.post("/devices", status_code=201)
def register_new_device(
    request: RegisterDeviceRequest,
    session: Session = Depends(get_session),
) -> DevicePublic:
    return register_device(session, **request.model_dump())  # type: ignore[return-value]


@router.get("/devices/{device_id}")
def device_detail(
    device_id: int,
    session: Session = Depends(get_session),
) -> DevicePublic:
    device = get_device(session, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device  # type: ignore[return-value]


@router.put("/devices/{device_id}/maintenance")
def update_maintenance(
    device_id: int,
    request: MaintenanceRequest,
    session: Session = Depends(get_session),
) -> DevicePublic:
    device = set_maintenance(session, device_id, request.until, request.reason)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device  # type: ignore[return-value]


@router.get("/devices/{device_id}/metrics")
def device_metrics(
    device_id: int,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[MetricSample]:
    if get_device(session, device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return list_metrics(session, device_id, limit=limit)


@router.get("/devices/{device_id}/interface-metrics")
def device_interface_metrics(
    device_id: int,
    interface: str | None = None,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[InterfaceMetric]:
    if get_device(session, device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return list_interface_metrics(session, device_id, interface_name=interface, limit=limit)


@router.get("/devices/{device_id}/interface-metrics/latest")
def device_latest_interface_metrics(
    device_id: int,
    session: Session = Depends(get_session),
) -> list[InterfaceMetric]:
    if get_device(session, device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return list_latest_interface_metrics(session, device_id)


@router.get("/devices/{device_id}/snapshot")
async def device_snapshot(
    device_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> DeviceSnapshot:
    try:
        snapshot = await orchestrator.live_snapshot(device_id)
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Device not found")
    # Secret passwords never leave the server
    snapshot.secrets = [replace(s, password=None) for s in snapshot.secrets]
    return snapshot


@router.get("/devices/{device_id}/ppp-profiles")
def device_ppp_profiles(
    device_id: int,
    session: Session = Depends(get_session),
) -> list[PppProfile]:
    if get_device(session, device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return list_ppp_profiles(session, device_id)


@router.post("/devices/{device_id}/ppp-profiles/sync")
async def sync_device_ppp_profiles(
    device_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[PppProfile]:
    try:
        profiles = await orchestrator.sync_profiles(device_id)
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if profiles is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return profiles


@router.get("/devices/{device_id}/ip-pools")
def device_ip_pools(
    device_id: int,
    session: Session = Depends(get_session),
) -> list[IpPool]:
    if get_device(session, device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return list_ip_pools(session, device_id)


@router.post("/devices/{device_id}/ip-pools/sync")
async def sync_device_ip_pools(
    device_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[IpPool]:
    try:
        pools = await orchestrator.sync_pools(device_id)
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if pools is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return pools


@router.get("/devices/{device_id}/rates")
def device_rates(
    device_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, InterfaceRate]:
    return orchestrator.rates.device_rates(device_id)


@router.get("/devices/{device_id}/rates/{interface}")
def interface_rate(
    device_id: int,
    interface: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> InterfaceRate:
    rate = orchestrator.current_rate(device_id, interface)
    if rate is None:
        raise HTTPException(status_code=404, detail="No rate sampled for this interface yet")
    return rate


@router.post("/devices/{device_id}/trigger")
async def trigger_device(
    device_id: int,
    mode: TriggerMode = TriggerMode.reconcile,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> PassResult:
    result = await orchestrator.manual_trigger(device_id, mode)
    if result is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return result


# --- Desired accounts ---


@router.get("/devices/{device_id}/accounts")
def list_device_accounts(
    device_id: int,
    session: Session = Depends(get_session),
) -> list[AccountPublic]:
    if get_device(session, device_id) is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return load_desired_accounts(session, device_id)  # type: ignore[return-value]


@router.post("/devices/{device_id}/accounts", status_code=201)
def create_device_account(
    device_id: int,
    request: CreateAccountRequest,
    session: Session = Depends(get_session),
) -> AccountPublic:
    device = get_device(session, device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    try:
        return create_account(session, device, **request.model_dump())  # type: ignore[return-value]
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/devices/{device_id}/import-preview")
async def import_preview(
    device_id: int,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[ImportCandidate]:
    try:
        candidates = await orchestrator.import_preview(device_id)
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if candidates is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return candidates


@router.post("/devices/{device_id}/import")
async def import_device_accounts(
    device_id: int,
    request: ImportRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ImportReport:
    try:
        report = await orchestrator.import_accounts(
            device_id, request.usernames, request.customer_id, request.location_id
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if report is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return report


def _account_or_404(session: Session, account_id: int) -> DesiredAccount:
    account = get_account(session, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account


@router.get("/accounts/{account_id}")
def account_detail(
    account_id: int,
    session: Session = Depends(get_session),
) -> AccountPublic:
    return _account_or_404(session, account_id)  # type: ignore[return-value]


@router.patch("/accounts/{account_id}")
def update_device_account(
    account_id: int,
    request: UpdateAccountRequest,
    session: Session = Depends(get_session),
) -> AccountPublic:
    # Only pass fields the caller actually sent
    updates = request.model_dump(exclude_unset=True)
    account = update_account(session, account_id, **updates)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account  # type: ignore[return-value]


@router.post("/accounts/{account_id}/apply")
async def apply_device_account(
    account_id: int,
    session: Session = Depends(get_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ApplyReport:
    account = _account_or_404(session, account_id)
    try:
        return await orchestrator.apply_one(account)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/accounts/{account_id}/remove")
async def remove_device_account(
    account_id: int,
    session: Session = Depends(get_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    account = _account_or_404(session, account_id)
    if not await orchestrator.remove_one(account):
        session.refresh(account)
        raise HTTPException(status_code=502, detail=account.last_error or "Remove failed")
    return {"status": "removed"}


@router.delete("/accounts/{account_id}", status_code=204)
async def delete_device_account(
    account_id: int,
    session: Session = Depends(get_session),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> None:
    account = _account_or_404(session, account_id)
    await orchestrator.delete_one(account)


# --- Incidents ---


@router.get("/incidents")
def list_active_incidents(
    tenant_id: str,
    device_id: int | None = None,
    fault_type: FaultType | None = None,
    severity: Severity | None = None,
    status: IncidentStatus | None = None,
    session: Session = Depends(get_session),
) -> list[Incident]:
    return list_open_incidents(
        session,
        tenant_id,
        device_id=device_id,
        fault_type=fault_type,
        severity=severity,
        status=status,
    )


# Literal path must come before {incident_id} parametric path
@router.get("/incidents/history")
def incident_history(
    tenant_id: str,
    device_id: int | None = None,
    dedup_key: str | None = None,
    limit: int = 100,
    session: Session = Depends(get_session),
) -> list[Incident]:
    return list_incidents(
        session, tenant_id, device_id=device_id, dedup_key=dedup_key, limit=limit
    )


@router.get("/incidents/{incident_id}")
def incident_detail(
    incident_id: int,
    session: Session = Depends(get_session),
) -> Incident:
    incident = get_incident(session, incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


@router.post("/incidents/{incident_id}/ack")
def ack_incident(
    incident_id: int,
    request: AcknowledgeRequest,
    session: Session = Depends(get_session),
) -> Incident:
    try:
        incident = acknowledge_incident(session, incident_id, request.user_id)
    except InvariantViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


@router.post("/incidents/{incident_id}/in-progress")
def start_incident(
    incident_id: int,
    session: Session = Depends(get_session),
) -> Incident:
    try:
        incident = mark_in_progress(session, incident_id)
    except InvariantViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


@router.post("/incidents/{incident_id}/resolve")
def resolve_existing_incident(
    incident_id: int,
    session: Session = Depends(get_session),
) -> Incident:
    incident = resolve_incident(session, incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident


@router.patch("/incidents/{incident_id}/notes")
def update_incident_notes(
    incident_id: int,
    request: NotesRequest,
    session: Session = Depends(get_session),
) -> Incident:
    incident = set_notes(session, incident_id, request.notes)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found")
    return incident
