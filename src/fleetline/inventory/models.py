"""Router PPP profile and IP pool inventory."""

from datetime import UTC, datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class PppProfile(SQLModel, table=True):
    """Last-synced copy of a router's ``/ppp/profile`` entry."""

    __table_args__ = (UniqueConstraint("device_id", "name", name="uq_ppp_profile_device_name"),)

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    device_id: int = Field(index=True, foreign_key="device.id")
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
    # False once a sync no longer finds the profile on the router
    router_present: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class IpPool(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("device_id", "name", name="uq_ip_pool_device_name"),)

    id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    device_id: int = Field(index=True, foreign_key="device.id")
    name: str
    ranges: str | None = None
    next_pool: str | None = None
    comment: str | None = None
    router_present: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
