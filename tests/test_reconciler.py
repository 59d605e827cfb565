"""Tests for PPPoE account diffing, applying and drift detection."""

import itertools
from datetime import UTC, datetime

import pytest
from sqlmodel import select

from fleetline.accounts.models import DesiredAccount
from fleetline.accounts.reconciler import (
    ImportAction,
    apply_account,
    apply_device,
    create_account,
    delete_account,
    diff,
    get_account,
    import_secrets,
    preview_import,
    reconcile_presence,
    remove_account,
    update_account,
)
from fleetline.errors import ConfigurationError, PartialApplyError
from fleetline.transport.base import AccountOpKind, PppSecret
from fleetline.transport.mock import MockTransport


_ids = itertools.count(1)


def _desired(username: str, **kwargs) -> DesiredAccount:
    defaults = dict(tenant_id="t1", device_id=1, password="pw", password_pending=False)
    defaults.update(kwargs)
    return DesiredAccount(id=next(_ids), username=username, **defaults)


class TestDiff:
    def test_missing_account_is_created(self):
        ops = diff([_desired("alice", profile="10mbps", password_pending=True)], [])
        assert len(ops) == 1
        op = ops[0]
        assert op.kind == AccountOpKind.create
        assert op.username == "alice"
        assert op.password == "pw"
        assert op.profile == "10mbps"
        assert op.disabled is False

    def test_in_sync_account_needs_nothing(self):
        desired = [_desired("alice", profile="10mbps", remote_address="10.9.0.5")]
        actual = [PppSecret(username="alice", profile="10mbps", remote_address="10.9.0.5")]
        assert diff(desired, actual) == []

    def test_profile_change_is_update_without_password(self):
        desired = [_desired("alice", profile="20mbps")]
        actual = [PppSecret(username="alice", secret_id="*1", profile="10mbps")]
        ops = diff(desired, actual)
        assert len(ops) == 1
        assert ops[0].kind == AccountOpKind.update
        assert ops[0].password is None
        assert ops[0].secret_id == "*1"

    def test_disabled_flag_change(self):
        ops = diff([_desired("alice", disabled=True)], [PppSecret(username="alice")])
        assert [op.kind for op in ops] == [AccountOpKind.update]
        assert ops[0].disabled is True

    def test_pending_password_is_pushed_on_update(self):
        desired = [_desired("alice", password="new", password_pending=True)]
        ops = diff(desired, [PppSecret(username="alice")])
        assert len(ops) == 1
        assert ops[0].password == "new"

    def test_pool_used_when_no_static_address(self):
        desired = [_desired("alice", address_pool="pool-a")]
        ops = diff(desired, [PppSecret(username="alice", remote_address="10.0.0.9")])
        assert ops[0].remote_address == "pool-a"

        static_wins = [_desired("alice", address_pool="pool-a", remote_address="10.0.0.9")]
        assert diff(static_wins, [PppSecret(username="alice", remote_address="10.0.0.9")]) == []

    def test_blank_fields_are_not_managed(self):
        desired = [_desired("alice", profile=None, comment="  ")]
        actual = [PppSecret(username="alice", profile="legacy", comment="set by hand")]
        assert diff(desired, actual) == []

    def test_unmanaged_device_secrets_left_alone(self):
        actual = [PppSecret(username="legacy"), PppSecret(username="alice")]
        assert diff([_desired("alice")], actual) == []

    def test_whitespace_in_usernames(self):
        assert diff([_desired("alice")], [PppSecret(username=" alice ")]) == []


class TestAccountCrud:
    def test_create_requires_password(self, session, device):
        with pytest.raises(ConfigurationError):
            create_account(session, device, "alice", "")

    def test_create_rejects_blank_username(self, session, device):
        with pytest.raises(ConfigurationError):
            create_account(session, device, "   ", "pw")

    def test_duplicate_username_per_device(self, session, device):
        create_account(session, device, "alice", "pw")
        with pytest.raises(ConfigurationError):
            create_account(session, device, "alice", "other")

    def test_update_with_empty_password_keeps_existing(self, session, device):
        account = create_account(session, device, "alice", "pw")
        account.password_pending = False
        session.commit()

        updated = update_account(session, account.id, password="", profile="20mbps")
        assert updated.password == "pw"
        assert updated.password_pending is False
        assert updated.profile == "20mbps"

    def test_update_with_new_password_marks_pending(self, session, device):
        account = create_account(session, device, "alice", "pw")
        account.password_pending = False
        session.commit()

        updated = update_account(session, account.id, password="rotated")
        assert updated.password == "rotated"
        assert updated.password_pending is True

    def test_update_unknown(self, session):
        assert update_account(session, 999, profile="x") is None


class TestApply:
    @pytest.mark.asyncio
    async def test_alice_converges(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw", profile="10mbps")

        report = await apply_device(session, transport, device, [], timeout=1.0)
        assert report.created == ["alice"]
        assert report.ok

        account = get_account(session, account.id)
        assert account.router_present is True
        assert account.last_error is None
        assert account.last_sync_at is not None
        assert account.password_pending is False
        assert account.router_secret_id is not None

        snapshot = await transport.fetch_snapshot(device)
        desired = [get_account(session, account.id)]
        assert diff(desired, snapshot.secrets) == []

    @pytest.mark.asyncio
    async def test_second_apply_is_a_no_op(self, session, device):
        transport = MockTransport()
        create_account(session, device, "alice", "pw", profile="10mbps", address_pool="pool-a")
        create_account(session, device, "bob", "pw", remote_address="10.9.0.2", comment="flat 3")

        await apply_device(session, transport, device, [], timeout=1.0)
        snapshot = await transport.fetch_snapshot(device)
        second = await apply_device(session, transport, device, snapshot.secrets, timeout=1.0)
        assert second.created == []
        assert second.updated == []
        assert second.unchanged == 2

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, session, device):
        transport = MockTransport()
        transport.router(device).failing_users.add("bob")
        for name in ("alice", "bob", "carol"):
            create_account(session, device, name, "pw")

        report = await apply_device(session, transport, device, [], timeout=1.0)
        assert sorted(report.created) == ["alice", "carol"]
        assert list(report.failures) == ["bob"]
        with pytest.raises(PartialApplyError) as exc:
            report.raise_for_failures()
        assert exc.value.failures == report.failures

        accounts = {a.username: a for a in session.exec(select(DesiredAccount)).all()}
        bob = accounts["bob"]
        assert bob.router_present is False
        assert "create failed" in bob.last_error
        assert bob.last_sync_at is not None
        assert accounts["alice"].router_present is True
        assert accounts["carol"].router_present is True

    @pytest.mark.asyncio
    async def test_failed_update_keeps_last_known_presence(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw", profile="10mbps")
        await apply_device(session, transport, device, [], timeout=1.0)

        update_account(session, account.id, profile="20mbps")
        transport.router(device).failing_users.add("alice")
        snapshot = await transport.fetch_snapshot(device)
        report = await apply_device(session, transport, device, snapshot.secrets, timeout=1.0)

        assert "alice" in report.failures
        account = get_account(session, account.id)
        assert account.router_present is True
        assert account.last_error.startswith("update failed")

    @pytest.mark.asyncio
    async def test_slow_device_times_out_per_account(self, session, device):
        transport = MockTransport()
        transport.router(device).delay = 0.2
        account = create_account(session, device, "alice", "pw")

        report = await apply_device(session, transport, device, [], timeout=0.05)
        assert report.failures == {"alice": "create failed: timed out"}
        assert get_account(session, account.id).last_error == "create failed: timed out"

    @pytest.mark.asyncio
    async def test_malformed_account_never_reaches_device(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw")
        account.password = ""
        session.commit()

        report = await apply_device(session, transport, device, [], timeout=1.0)
        assert "alice" in report.failures
        assert not [c for c in transport.calls if c[2] == "alice"]
        assert "no secret" in get_account(session, account.id).last_error

    @pytest.mark.asyncio
    async def test_apply_single_account_raises_configuration_error(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw")
        account.password = ""
        session.commit()

        with pytest.raises(ConfigurationError):
            await apply_account(session, transport, device, account, [], timeout=1.0)
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_apply_single_account_only_touches_that_account(self, session, device):
        transport = MockTransport()
        alice = create_account(session, device, "alice", "pw")
        create_account(session, device, "bob", "pw")

        report = await apply_account(session, transport, device, alice, [], timeout=1.0)
        assert report.created == ["alice"]
        assert set(transport.router(device).secrets) == {"alice"}

    @pytest.mark.asyncio
    async def test_remove_account(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw")
        await apply_device(session, transport, device, [], timeout=1.0)

        assert await remove_account(session, transport, device, account, timeout=1.0) is True
        account = get_account(session, account.id)
        assert account.router_present is False
        assert account.router_secret_id is None
        assert "alice" not in transport.router(device).secrets

    @pytest.mark.asyncio
    async def test_remove_account_failure_recorded(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw")
        transport.router(device).unreachable = True

        assert await remove_account(session, transport, device, account, timeout=1.0) is False
        assert get_account(session, account.id).last_error.startswith("remove failed")


class TestDriftAndImport:
    def test_reconcile_presence_counts(self, session, device):
        create_account(session, device, "alice", "pw")
        create_account(session, device, "bob", "pw")
        secrets = [PppSecret(username="alice", secret_id="*7"), PppSecret(username="legacy")]

        summary = reconcile_presence(session, device.id, secrets, datetime.now(UTC))
        assert (summary.present, summary.missing, summary.router_total) == (1, 1, 2)

        accounts = {a.username: a for a in session.exec(select(DesiredAccount)).all()}
        assert accounts["alice"].router_present is True
        assert accounts["alice"].router_secret_id == "*7"
        assert accounts["bob"].router_present is False
        assert accounts["bob"].last_sync_at is not None

    def test_preview_import_sorted_new_update_same(self):
        desired = [
            _desired("same", profile="10mbps"),
            _desired("changed", profile="10mbps"),
        ]
        secrets = [
            PppSecret(username="same", profile="10mbps"),
            PppSecret(username="changed", profile="50mbps"),
            PppSecret(username="fresh"),
        ]
        preview = preview_import(desired, secrets)
        assert [(c.secret.username, c.action) for c in preview] == [
            ("fresh", ImportAction.new),
            ("changed", ImportAction.update),
            ("same", ImportAction.same),
        ]
        assert preview[0].existing_account_id is None
        assert preview[1].existing_account_id == desired[1].id

    def test_import_creates_and_updates_from_device(self, session, device):
        existing = create_account(session, device, "alice", "old-pw", profile="5mbps")
        secrets = [
            PppSecret(
                username="alice",
                secret_id="*A",
                profile="10mbps",
                password_available=True,
                password="router-pw",
            ),
            PppSecret(username="bob", secret_id="*B", remote_address="pool-a", disabled=True),
        ]

        report = import_secrets(session, device, secrets, ["alice", " bob ", "ghost", ""])
        assert report.created == ["bob"]
        assert report.updated == ["alice"]
        assert report.missing_password == ["bob"]
        assert report.errors == {"ghost": "Not found on router"}

        alice = get_account(session, existing.id)
        assert alice.password == "router-pw"
        assert alice.password_pending is False
        assert alice.profile == "10mbps"
        assert alice.router_secret_id == "*A"
        assert alice.last_error is None

        bob = session.exec(select(DesiredAccount).where(DesiredAccount.username == "bob")).one()
        assert bob.password == ""
        assert bob.password_pending is False
        assert bob.remote_address == "pool-a"
        assert bob.disabled is True
        assert bob.router_present is True
        assert "Password not available" in bob.last_error

    def test_import_keeps_stored_password_when_device_masks_it(self, session, device):
        account = create_account(session, device, "alice", "kept")
        secrets = [PppSecret(username="alice", password_available=False)]
        report = import_secrets(session, device, secrets, ["alice"])
        assert report.missing_password == ["alice"]
        assert get_account(session, account.id).password == "kept"

    def test_imported_account_without_password_is_not_pushed(self, session, device):
        secrets = [PppSecret(username="bob", profile="10mbps")]
        import_secrets(session, device, secrets, ["bob"])
        bob = session.exec(select(DesiredAccount)).one()
        assert diff([bob], secrets) == []

    def test_import_owner_needs_both_ids(self, session, device):
        with pytest.raises(ConfigurationError):
            import_secrets(session, device, [], ["alice"], customer_id="c1")

    def test_import_sets_owner(self, session, device):
        secrets = [PppSecret(username="bob")]
        import_secrets(session, device, secrets, ["bob"], customer_id="c1", location_id="l1")
        bob = session.exec(select(DesiredAccount)).one()
        assert (bob.customer_id, bob.location_id) == ("c1", "l1")


class TestDeleteAccount:
    @pytest.mark.asyncio
    async def test_delete_removes_secret_and_row(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw")
        account_id = account.id
        await apply_device(session, transport, device, [], timeout=1.0)

        assert await delete_account(session, transport, device, account, timeout=1.0) is True
        assert get_account(session, account_id) is None
        assert "alice" not in transport.router(device).secrets

    @pytest.mark.asyncio
    async def test_delete_survives_unreachable_device(self, session, device):
        transport = MockTransport()
        account = create_account(session, device, "alice", "pw")
        account_id = account.id
        transport.router(device).unreachable = True

        assert await delete_account(session, transport, device, account, timeout=1.0) is False
        assert get_account(session, account_id) is None
