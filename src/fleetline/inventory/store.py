"""Sync PPP profiles and IP pools from a router into the inventory tables.

A sync first marks every known row of the device as absent, then upserts
what the router reported. Rows are never deleted, so accounts that refer to
a profile or pool removed on the router still resolve to its last copy.
"""

import logging
from dataclasses import asdict
from datetime import UTC, datetime

from sqlalchemy import update
from sqlmodel import Session, col, select

from fleetline.database import insert_for
from fleetline.inventory.models import IpPool, PppProfile
from fleetline.registry.models import Device
from fleetline.transport.base import IpPoolInfo, PppProfileInfo

logger = logging.getLogger(__name__)


def list_ppp_profiles(session: Session, device_id: int) -> list[PppProfile]:
    stmt = select(PppProfile).where(PppProfile.device_id == device_id).order_by(PppProfile.name)
    return list(session.exec(stmt).all())


def list_ip_pools(session: Session, device_id: int) -> list[IpPool]:
    stmt = select(IpPool).where(IpPool.device_id == device_id).order_by(IpPool.name)
    return list(session.exec(stmt).all())


def _sync(
    session: Session,
    model: type[PppProfile] | type[IpPool],
    device: Device,
    rows: list[dict[str, object]],
    now: datetime,
) -> None:
    session.execute(
        update(model)
        .where(col(model.device_id) == device.id)
        .values(router_present=False, last_sync_at=now, updated_at=now)
    )
    insert = insert_for(session)
    for row in rows:
        stmt = insert(model).values(
            tenant_id=device.tenant_id,
            device_id=device.id,
            router_present=True,
            last_sync_at=now,
            created_at=now,
            updated_at=now,
            **row,
        )
        refreshed = {key: stmt.excluded[key] for key in row if key != "name"}
        stmt = stmt.on_conflict_do_update(
            index_elements=["device_id", "name"],
            set_={
                **refreshed,
                "router_present": True,
                "last_sync_at": stmt.excluded.last_sync_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
    session.commit()


def sync_ppp_profiles(
    session: Session, device: Device, profiles: list[PppProfileInfo], now: datetime | None = None
) -> list[PppProfile]:
    """Store the router's profiles; ones it no longer has stay with ``router_present`` False."""
    assert device.id is not None
    now = now or datetime.now(UTC)
    _sync(session, PppProfile, device, [asdict(p) for p in profiles], now)
    logger.info("Device %s: synced %d PPP profile(s)", device.id, len(profiles))
    return list_ppp_profiles(session, device.id)


def sync_ip_pools(
    session: Session, device: Device, pools: list[IpPoolInfo], now: datetime | None = None
) -> list[IpPool]:
    assert device.id is not None
    now = now or datetime.now(UTC)
    _sync(session, IpPool, device, [asdict(p) for p in pools], now)
    logger.info("Device %s: synced %d IP pool(s)", device.id, len(pools))
    return list_ip_pools(session, device.id)
