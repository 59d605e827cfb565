"""PPPoE account reconciliation: diff desired accounts against device secrets.

``diff`` is pure and never touches the device. ``apply_device`` validates,
diffs and pushes the resulting operations one account at a time, recording
the outcome of every attempt on the account's sync state. ``reconcile_presence``
only refreshes presence flags from a secret list and never writes to the device.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlmodel import Session, select

from fleetline.accounts.models import DesiredAccount
from fleetline.errors import ConfigurationError, PartialApplyError, TransportError
from fleetline.registry.models import Device
from fleetline.transport.base import AccountOp, AccountOpKind, BaseTransport, PppSecret

logger = logging.getLogger(__name__)


def _norm(value: str | None) -> str:
    return (value or "").strip()


# --- Desired-state CRUD ---


def create_account(
    session: Session,
    device: Device,
    username: str,
    password: str,
    profile: str | None = None,
    remote_address: str | None = None,
    address_pool: str | None = None,
    disabled: bool = False,
    comment: str | None = None,
    customer_id: str | None = None,
    location_id: str | None = None,
) -> DesiredAccount:
    """Declare a new subscriber account for a router.

    Raises:
        ConfigurationError: blank username/password or duplicate username on this router.
    """
    username = _norm(username)
    if not username:
        raise ConfigurationError("username is required")
    if not _norm(password):
        raise ConfigurationError(f"password is required for new account {username}")
    existing = session.exec(
        select(DesiredAccount).where(
            DesiredAccount.device_id == device.id, DesiredAccount.username == username
        )
    ).first()
    if existing is not None:
        raise ConfigurationError(f"account {username} already exists on device {device.id}")

    account = DesiredAccount(
        tenant_id=device.tenant_id,
        device_id=device.id,
        username=username,
        password=password,
        password_pending=True,
        profile=_norm(profile) or None,
        remote_address=_norm(remote_address) or None,
        address_pool=_norm(address_pool) or None,
        disabled=disabled,
        comment=_norm(comment) or None,
        customer_id=customer_id,
        location_id=location_id,
    )
    session.add(account)
    session.commit()
    session.refresh(account)
    logger.info("Created account %s for device %s (id=%s)", username, device.id, account.id)
    return account


def get_account(session: Session, account_id: int) -> DesiredAccount | None:
    return session.get(DesiredAccount, account_id)


def update_account(session: Session, account_id: int, **kwargs: object) -> DesiredAccount | None:
    """Edit desired fields. Return None if not found.

    An empty or missing ``password`` keeps the current one; a non-empty
    password is stored and flagged to be pushed on the next apply.
    """
    account = session.get(DesiredAccount, account_id)
    if account is None:
        return None

    password = kwargs.pop("password", None)
    if isinstance(password, str) and password.strip():
        account.password = password
        account.password_pending = True

    for key in ("profile", "remote_address", "address_pool", "comment"):
        if key in kwargs:
            value = kwargs.pop(key)
            setattr(account, key, _norm(value) or None if isinstance(value, str) else value)
    if "disabled" in kwargs:
        account.disabled = bool(kwargs.pop("disabled"))
    for key in ("customer_id", "location_id"):
        if key in kwargs:
            setattr(account, key, kwargs.pop(key))

    account.updated_at = datetime.now(UTC)
    session.commit()
    session.refresh(account)
    return account


def load_desired_accounts(session: Session, device_id: int) -> list[DesiredAccount]:
    stmt = (
        select(DesiredAccount)
        .where(DesiredAccount.device_id == device_id)
        .order_by(DesiredAccount.username)
    )
    return list(session.exec(stmt).all())


def save_sync_state(
    session: Session,
    account: DesiredAccount,
    now: datetime,
    error: str | None = None,
    router_present: bool | None = None,
    secret_id: str | None = None,
    password_pushed: bool = False,
) -> DesiredAccount:
    """Record the outcome of one attempt.

    ``last_sync_at`` moves on every attempt so operators see recency even
    when the attempt failed. ``router_present`` only changes when the caller
    knows the answer.
    """
    account.last_sync_at = now
    account.last_error = error
    if router_present is not None:
        account.router_present = router_present
    if secret_id:
        account.router_secret_id = secret_id
    if password_pushed:
        account.password_pending = False
    account.updated_at = now
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


# --- Pure diff ---


def validate_account(account: DesiredAccount, on_device: bool) -> None:
    """Reject accounts that cannot be pushed.

    Raises:
        ConfigurationError: missing username, or missing secret when it must be created.
    """
    if not _norm(account.username):
        raise ConfigurationError(f"account {account.id} has no username")
    if not on_device and not _norm(account.password):
        raise ConfigurationError(f"account {account.username} has no secret to create with")


def diff(desired: list[DesiredAccount], actual: list[PppSecret]) -> list[AccountOp]:
    """Minimal create/update operations that converge ``actual`` toward ``desired``.

    Secrets on the device without a desired account are left alone. Blank
    desired profile, remote address or comment mean "not managed" and are
    not compared.
    """
    live = {_norm(s.username): s for s in actual}
    ops: list[AccountOp] = []

    for account in desired:
        username = _norm(account.username)
        secret = live.get(username)
        target_remote = account.target_remote()
        profile = _norm(account.profile) or None
        comment = _norm(account.comment) or None

        if secret is None:
            ops.append(
                AccountOp(
                    kind=AccountOpKind.create,
                    username=username,
                    account_id=account.id,
                    password=account.password,
                    profile=profile,
                    remote_address=target_remote,
                    disabled=account.disabled,
                    comment=comment,
                )
            )
            continue

        changed = (
            (profile is not None and profile != _norm(secret.profile))
            or (target_remote is not None and target_remote != _norm(secret.remote_address))
            or (comment is not None and comment != _norm(secret.comment))
            or account.disabled != secret.disabled
        )
        push_password = account.password_pending and bool(_norm(account.password))
        if not changed and not push_password:
            continue

        ops.append(
            AccountOp(
                kind=AccountOpKind.update,
                username=username,
                account_id=account.id,
                password=account.password if push_password else None,
                profile=profile,
                remote_address=target_remote,
                disabled=account.disabled,
                comment=comment,
                secret_id=secret.secret_id,
            )
        )

    return ops


# --- Applying ---


@dataclass
class ApplyReport:
    device_id: int
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialApplyError(self.failures)


async def apply_ops(
    session: Session,
    transport: BaseTransport,
    device: Device,
    accounts: dict[int, DesiredAccount],
    ops: list[AccountOp],
    report: ApplyReport,
    timeout: float,
) -> ApplyReport:
    """Push operations sequentially; a failing account never stops the batch."""
    for op in ops:
        account = accounts.get(op.account_id) if op.account_id is not None else None
        now = datetime.now(UTC)
        try:
            secret_id = await asyncio.wait_for(
                transport.apply_account_op(device, op), timeout=timeout
            )
        except (TransportError, TimeoutError) as e:
            msg = f"{op.kind} failed: {str(e) or 'timed out'}"
            logger.warning("Device %s: %s for %s", device.id, msg, op.username)
            report.failures[op.username] = msg
            if account is not None:
                save_sync_state(session, account, now, error=msg)
            continue

        if op.kind == AccountOpKind.create:
            report.created.append(op.username)
        else:
            report.updated.append(op.username)
        if account is not None:
            save_sync_state(
                session,
                account,
                now,
                error=None,
                router_present=True,
                secret_id=secret_id,
                password_pushed=op.password is not None,
            )
    return report


async def apply_device(
    session: Session,
    transport: BaseTransport,
    device: Device,
    secrets: list[PppSecret],
    timeout: float,
    account_ids: set[int] | None = None,
) -> ApplyReport:
    """Converge a device's secrets toward its desired accounts.

    Malformed accounts are rejected before any device call and recorded
    on their sync state. ``account_ids`` narrows the batch to specific accounts.
    """
    desired = load_desired_accounts(session, device.id)
    if account_ids is not None:
        desired = [a for a in desired if a.id in account_ids]
    live = {_norm(s.username) for s in secrets}
    report = ApplyReport(device_id=device.id)

    valid: list[DesiredAccount] = []
    for account in desired:
        try:
            validate_account(account, on_device=_norm(account.username) in live)
        except ConfigurationError as e:
            report.failures[account.username] = str(e)
            save_sync_state(session, account, datetime.now(UTC), error=str(e))
            continue
        valid.append(account)

    ops = diff(valid, secrets)
    report.unchanged = len(valid) - len(ops)
    by_id = {a.id: a for a in valid if a.id is not None}

    # Accounts already converged still get a fresh sync stamp
    touched = {op.account_id for op in ops}
    now = datetime.now(UTC)
    for account in valid:
        if account.id not in touched:
            save_sync_state(session, account, now, error=None, router_present=True)

    await apply_ops(session, transport, device, by_id, ops, report, timeout)
    logger.info(
        "Device %s apply: %d created, %d updated, %d unchanged, %d failed",
        device.id,
        len(report.created),
        len(report.updated),
        report.unchanged,
        len(report.failures),
    )
    return report


async def apply_account(
    session: Session,
    transport: BaseTransport,
    device: Device,
    account: DesiredAccount,
    secrets: list[PppSecret],
    timeout: float,
) -> ApplyReport:
    """Apply a single account. Configuration problems are raised, not recorded.

    Raises:
        ConfigurationError: the account cannot be pushed as it stands.
    """
    on_device = any(_norm(s.username) == _norm(account.username) for s in secrets)
    validate_account(account, on_device=on_device)
    return await apply_device(
        session, transport, device, secrets, timeout, account_ids={account.id}
    )


async def remove_account(
    session: Session,
    transport: BaseTransport,
    device: Device,
    account: DesiredAccount,
    timeout: float,
) -> bool:
    """Explicitly delete an account's secret from the device.

    The desired row is kept; only its sync state changes. Returns False if
    the attempt failed (the error is on the account).
    """
    now = datetime.now(UTC)
    try:
        removed = await asyncio.wait_for(
            transport.remove_secret(device, account.username), timeout=timeout
        )
    except (TransportError, TimeoutError) as e:
        save_sync_state(session, account, now, error=f"remove failed: {str(e) or 'timed out'}")
        return False
    account.router_secret_id = None
    save_sync_state(session, account, now, error=None, router_present=False)
    logger.info(
        "Device %s: removed secret %s (%s)",
        device.id,
        account.username,
        "deleted" if removed else "was absent",
    )
    return True


# --- Read-only drift detection ---


@dataclass
class DriftSummary:
    device_id: int
    present: int
    missing: int
    router_total: int


def reconcile_presence(
    session: Session, device_id: int, secrets: list[PppSecret], now: datetime
) -> DriftSummary:
    """Refresh ``router_present``/``last_sync_at`` from a live secret list. No device writes."""
    live = {_norm(s.username): s for s in secrets}
    present = missing = 0
    for account in load_desired_accounts(session, device_id):
        secret = live.get(_norm(account.username))
        if secret is not None:
            present += 1
            account.router_present = True
            if secret.secret_id:
                account.router_secret_id = secret.secret_id
        else:
            missing += 1
            account.router_present = False
        account.last_sync_at = now
        account.updated_at = now
        session.add(account)
    session.commit()
    return DriftSummary(
        device_id=device_id, present=present, missing=missing, router_total=len(live)
    )


class ImportAction(enum.StrEnum):
    new = "new"
    update = "update"
    same = "same"


@dataclass
class ImportCandidate:
    secret: PppSecret
    action: ImportAction
    existing_account_id: int | None = None


_IMPORT_ORDER = {ImportAction.new: 0, ImportAction.update: 1, ImportAction.same: 2}


def preview_import(
    desired: list[DesiredAccount], secrets: list[PppSecret]
) -> list[ImportCandidate]:
    """Classify device secrets against desired accounts: new, update or same."""
    by_name = {_norm(a.username): a for a in desired}
    out: list[ImportCandidate] = []
    for secret in secrets:
        account = by_name.get(_norm(secret.username))
        if account is None:
            out.append(ImportCandidate(secret=secret, action=ImportAction.new))
            continue
        same = (
            _norm(secret.remote_address) == _norm(account.target_remote())
            and _norm(secret.profile) == _norm(account.profile)
            and secret.disabled == account.disabled
            and _norm(secret.comment) == _norm(account.comment)
        )
        out.append(
            ImportCandidate(
                secret=secret,
                action=ImportAction.same if same else ImportAction.update,
                existing_account_id=account.id,
            )
        )
    out.sort(key=lambda c: _IMPORT_ORDER[c.action])
    return out


_MISSING_PASSWORD = "Password not available from router; please set manually."


@dataclass
class ImportReport:
    device_id: int
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    missing_password: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def validate_import_owner(customer_id: str | None, location_id: str | None) -> None:
    """Imported accounts are owned by both a customer and a location, or by neither."""
    if (customer_id is None) != (location_id is None):
        raise ConfigurationError("provide both customer_id and location_id, or neither")


def import_secrets(
    session: Session,
    device: Device,
    secrets: list[PppSecret],
    usernames: list[str],
    customer_id: str | None = None,
    location_id: str | None = None,
) -> ImportReport:
    """Adopt selected device secrets as desired accounts.

    New usernames become accounts; existing ones take over the device's
    profile, remote address, disabled flag and comment. The device password
    replaces the stored one only when the device exposes it; otherwise the
    account keeps (or starts with) no usable password and says so in
    ``last_error``. Usernames the device does not have are reported as errors.

    Raises:
        ConfigurationError: only one of ``customer_id``/``location_id`` given.
    """
    validate_import_owner(customer_id, location_id)
    report = ImportReport(device_id=device.id)
    wanted = sorted({_norm(u) for u in usernames if _norm(u)})
    live = {_norm(s.username): s for s in secrets}
    existing = {_norm(a.username): a for a in load_desired_accounts(session, device.id)}
    now = datetime.now(UTC)

    for username in wanted:
        secret = live.get(username)
        if secret is None:
            report.errors[username] = "Not found on router"
            continue

        readable = secret.password_available and bool(secret.password)
        account = existing.get(username)
        if account is None:
            account = DesiredAccount(
                tenant_id=device.tenant_id,
                device_id=device.id,
                username=username,
                password="",
                password_pending=False,
                created_at=now,
            )
            report.created.append(username)
        else:
            report.updated.append(username)

        if readable:
            account.password = secret.password or ""
            account.password_pending = False
        else:
            report.missing_password.append(username)
        if customer_id is not None:
            account.customer_id = customer_id
            account.location_id = location_id
        account.profile = _norm(secret.profile) or None
        account.remote_address = _norm(secret.remote_address) or None
        account.address_pool = None
        account.disabled = secret.disabled
        account.comment = _norm(secret.comment) or None
        account.router_present = True
        account.router_secret_id = secret.secret_id
        account.last_sync_at = now
        account.last_error = None if readable else _MISSING_PASSWORD
        account.updated_at = now
        session.add(account)

    session.commit()
    logger.info(
        "Device %s import: %d created, %d updated, %d without password, %d errors",
        device.id,
        len(report.created),
        len(report.updated),
        len(report.missing_password),
        len(report.errors),
    )
    return report


async def delete_account(
    session: Session,
    transport: BaseTransport,
    device: Device,
    account: DesiredAccount,
    timeout: float,
) -> bool:
    """Delete a desired account, removing its secret from the device on a best-effort basis.

    Returns True if the device confirmed the secret is gone. The desired row
    is deleted either way.
    """
    username, account_id = account.username, account.id
    removed = False
    try:
        await asyncio.wait_for(transport.remove_secret(device, username), timeout=timeout)
        removed = True
    except (TransportError, TimeoutError) as e:
        logger.warning(
            "Device %s: could not remove secret %s while deleting account: %s",
            device.id,
            username,
            str(e) or "timed out",
        )
    session.delete(account)
    session.commit()
    logger.info("Deleted account %s (id=%s) from device %s", username, account_id, device.id)
    return removed
