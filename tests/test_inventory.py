"""Tests for PPP profile and IP pool inventory sync."""

from datetime import UTC, datetime, timedelta

from fleetline.inventory.store import (
    list_ip_pools,
    list_ppp_profiles,
    sync_ip_pools,
    sync_ppp_profiles,
)
from fleetline.registry.store import as_utc, register_device
from fleetline.transport.base import IpPoolInfo, PppProfileInfo

T0 = datetime(2026, 3, 1, 8, 0, 0, tzinfo=UTC)


class TestProfileSync:
    def test_first_sync_stores_profiles(self, session, device):
        profiles = [
            PppProfileInfo(name="10mbps", rate_limit="10M/10M", only_one=True),
            PppProfileInfo(name="default"),
        ]
        stored = sync_ppp_profiles(session, device, profiles, now=T0)
        assert [p.name for p in stored] == ["10mbps", "default"]
        assert stored[0].rate_limit == "10M/10M"
        assert stored[0].only_one is True
        assert stored[1].only_one is None
        assert all(p.router_present for p in stored)
        assert as_utc(stored[0].last_sync_at) == T0

    def test_resync_updates_and_marks_missing(self, session, device):
        sync_ppp_profiles(
            session,
            device,
            [PppProfileInfo(name="10mbps", rate_limit="10M/10M"), PppProfileInfo(name="old")],
            now=T0,
        )
        later = T0 + timedelta(minutes=5)
        stored = sync_ppp_profiles(
            session, device, [PppProfileInfo(name="10mbps", rate_limit="12M/12M")], now=later
        )
        by_name = {p.name: p for p in stored}
        assert set(by_name) == {"10mbps", "old"}
        assert by_name["10mbps"].rate_limit == "12M/12M"
        assert by_name["10mbps"].router_present is True
        assert by_name["old"].router_present is False
        assert as_utc(by_name["old"].last_sync_at) == later

    def test_devices_are_separate(self, session, device):
        other = register_device(session, "t1", "R2", "10.0.0.2", "api", "pw")
        sync_ppp_profiles(session, device, [PppProfileInfo(name="10mbps")], now=T0)
        sync_ppp_profiles(session, other, [], now=T0)
        assert len(list_ppp_profiles(session, device.id)) == 1
        assert list_ppp_profiles(session, other.id) == []


class TestPoolSync:
    def test_sync_and_resync(self, session, device):
        sync_ip_pools(
            session,
            device,
            [IpPoolInfo(name="pool-a", ranges="100.64.0.2-100.64.3.254", next_pool="pool-b")],
            now=T0,
        )
        stored = sync_ip_pools(session, device, [], now=T0 + timedelta(minutes=1))
        [pool] = stored
        assert pool.ranges == "100.64.0.2-100.64.3.254"
        assert pool.next_pool == "pool-b"
        assert pool.router_present is False
        assert list_ip_pools(session, device.id)[0].tenant_id == "t1"
