"""Tests for MemoryStore persistence, transactions and the role-repair migration."""

from datetime import datetime, timedelta, timezone

import pytest

from coursegate.service.migrations import repair_missing_roles
from coursegate.service.roles import Role
from coursegate.storage.errors import ConstraintViolation
from coursegate.storage.memory import MemoryStore
from coursegate.storage.models import InviteStatus

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def approved_invite(store):
    admin = store.create_account("Ada", "ada@example.com", "h", Role.ADMIN)
    request = store.create_invite_request("Rui", "rui@example.com", Role.INSTRUCTOR)
    store.approve_invite_request(
        request.id,
        processed_by=admin.id,
        token="a" * 48,
        token_expires_at=NOW + timedelta(days=7),
        processed_at=NOW,
    )
    return request


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        root = str(tmp_path / "persist")
        first = MemoryStore(fs_root=root)
        account = first.create_account("Pat", "pat@example.com", "h", Role.INSTRUCTOR)
        first.set_backup_code(account.id, "012345", NOW)
        first.append_audit_entry(account.id, "hello")

        second = MemoryStore(fs_root=root)

        loaded = second.get_account(account.id)
        assert loaded.role == Role.INSTRUCTOR
        assert loaded.backup_code == "012345"
        assert loaded.backup_code_generated_at == NOW
        assert second.list_audit_entries()[0].action == "hello"
        # sequences continue rather than reuse ids
        assert second.create_account("Q", "q@example.com", "h", Role.STUDENT).id == account.id + 1

    def test_missing_role_round_trips_as_none(self, tmp_path):
        root = str(tmp_path / "persist")
        first = MemoryStore(fs_root=root)
        account = first.create_account("Old", "old@example.com", "h", Role.STUDENT)
        first.accounts[account.id].role = None
        first._persist_state()

        assert MemoryStore(fs_root=root).get_account(account.id).role is None


class TestAccounts:
    def test_duplicate_email(self, store):
        store.create_account("A", "a@example.com", "h", Role.STUDENT)
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_account("B", "a@example.com", "h", Role.STUDENT)
        assert excinfo.value.field == "email"

    def test_reset_password_clears_backup_code(self, store):
        account = store.create_account("A", "a@example.com", "h", Role.STUDENT)
        store.set_backup_code(account.id, "123456", NOW)

        assert store.reset_password(account.id, "new-hash") is True

        stored = store.get_account(account.id)
        assert stored.password_hash == "new-hash"
        assert stored.backup_code is None
        assert stored.backup_code_generated_at is None

    def test_delete_nullifies_references(self, store, approved_invite):
        reporter = store.create_account("R", "r@example.com", "h", Role.STUDENT)
        incident = store.create_incident("x", reported_by=reporter.id)
        store.append_audit_entry(reporter.id, "did x")
        request = store.create_invite_request("R", "r@example.com", Role.INSTRUCTOR, requested_by=reporter.id)

        assert store.delete_account(reporter.id) is True

        assert store.get_incident(incident.id).reported_by is None
        assert store.get_invite_request(request.id).requested_by is None
        assert store.list_audit_entries()[0].user_id is None
        assert store.delete_account(reporter.id) is False


class TestInviteTransitions:
    def test_approve_only_from_pending(self, store, approved_invite):
        again = store.approve_invite_request(
            approved_invite.id, processed_by=1, token="b" * 48,
            token_expires_at=NOW + timedelta(days=7), processed_at=NOW,
        )
        assert again is None
        assert store.get_invite_request(approved_invite.id).token == "a" * 48

    def test_redeem_consumes_token(self, store, approved_invite):
        target = store.create_account("T", "t@example.com", "h", Role.STUDENT)

        account = store.redeem_invite_token(approved_invite.id, "a" * 48, target.id, NOW)

        assert account.role == Role.INSTRUCTOR
        request = store.get_invite_request(approved_invite.id)
        assert request.token is None
        assert request.status == InviteStatus.APPROVED
        assert store.find_invite_by_token("a" * 48) is None
        assert store.redeem_invite_token(approved_invite.id, "a" * 48, target.id, NOW) is None

    def test_redeem_after_expiry(self, store, approved_invite):
        target = store.create_account("T", "t@example.com", "h", Role.STUDENT)

        later = NOW + timedelta(days=7)
        assert store.redeem_invite_token(approved_invite.id, "a" * 48, target.id, later) is None
        assert store.get_account(target.id).role == Role.STUDENT

    def test_registration_duplicate_email_keeps_token(self, store, approved_invite):
        store.create_account("Taken", "taken@example.com", "h", Role.STUDENT)

        with pytest.raises(ConstraintViolation):
            store.create_account_with_invite(
                "New", "taken@example.com", "h", approved_invite.id, "a" * 48, NOW
            )

        assert store.get_invite_request(approved_invite.id).token == "a" * 48

    def test_registration_consumes_token(self, store, approved_invite):
        account = store.create_account_with_invite(
            "New", "new@example.com", "h", approved_invite.id, "a" * 48, NOW
        )

        assert account.role == Role.INSTRUCTOR
        assert store.get_invite_request(approved_invite.id).token is None


class TestRoleRepair:
    def test_repairs_only_empty_roles(self, store):
        keep = store.create_account("K", "k@example.com", "h", Role.INSTRUCTOR)
        legacy = store.create_account("L", "l@example.com", "h", Role.STUDENT)
        store.accounts[legacy.id].role = None

        repaired = repair_missing_roles(store, Role.STUDENT)

        assert repaired == [legacy.id]
        assert store.get_account(legacy.id).role == Role.STUDENT
        assert store.get_account(keep.id).role == Role.INSTRUCTOR

    def test_clean_store(self, store):
        store.create_account("K", "k@example.com", "h", Role.STUDENT)
        assert repair_missing_roles(store, Role.STUDENT) == []
