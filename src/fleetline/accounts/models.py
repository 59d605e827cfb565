"""Desired PPPoE account model and its sync state."""

from datetime import UTC, datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class DesiredAccount(SQLModel, table=True):
    """An operator-declared PPPoE subscriber for one router.

    The sync-state columns (``router_present``, ``router_secret_id``,
    ``last_sync_at``, ``last_error``) are written only by the reconciler.
    """

    __table_args__ = (UniqueConstraint("device_id", "username", name="uq_account_device_user"),)

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    device_id: int = Field(index=True, foreign_key="device.id")
    customer_id: str | None = None
    location_id: str | None = None
    username: str
    password: str = ""
    # True when the operator set a new password that has not reached the router yet
    password_pending: bool = True
    profile: str | None = None
    remote_address: str | None = None
    address_pool: str | None = None
    disabled: bool = False
    comment: str | None = None

    # Sync state
    router_present: bool = False
    router_secret_id: str | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def target_remote(self) -> str | None:
        """Static address wins over pool; both map to the secret's remote-address."""
        for value in (self.remote_address, self.address_pool):
            if value and value.strip():
                return value.strip()
        return None
