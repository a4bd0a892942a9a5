"""Tests for the invite/elevation workflow: request, approve, reject, redeem."""

import re
import threading
from datetime import timedelta

import pytest

from coursegate.service.errors import (
    AlreadyProcessedError,
    ForbiddenError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from coursegate.service.guard import Principal
from coursegate.service.roles import Role
from coursegate.service.tokens import TokenPurpose
from coursegate.storage.models import InviteStatus


def _principal(account) -> Principal:
    return Principal(id=account.id, role=account.role, email=account.email, name=account.name)


@pytest.fixture
def admin(services):
    return _principal(services.store.create_account("Ada", "ada@example.com", "x", Role.ADMIN))


@pytest.fixture
def requester(services):
    return services.store.create_account("Rui", "rui@example.com", "x", Role.STUDENT)


@pytest.fixture
def pending(services, requester):
    return services.invites.request(
        name="Rui",
        email="rui@example.com",
        role="security_analyst",
        message="on-call rotation",
        requested_by=requester.id,
    )


class TestRequest:
    def test_creates_pending_request_and_audits(self, services, pending, requester):
        assert pending.status == InviteStatus.PENDING
        assert pending.role == Role.SECURITY_ANALYST
        assert pending.token is None
        actions = [e.action for e in services.store.list_audit_entries()]
        assert (
            f"Invite request created id={pending.id} name=Rui email=rui@example.com "
            "role=security_analyst"
        ) in actions

    def test_unknown_role_rejected(self, services):
        with pytest.raises(ValidationError):
            services.invites.request(name="X", email="x@example.com", role="superuser")
        assert services.store.list_invite_requests() == []

    def test_anonymous_request(self, services):
        request = services.invites.request(name="Anon", email="anon@example.com", role="instructor")
        assert request.requested_by is None


class TestApprove:
    def test_approve_issues_token(self, services, pending, admin, clock):
        approved = services.invites.approve(pending.id, admin)

        assert approved.status == InviteStatus.APPROVED
        assert re.fullmatch(r"[0-9a-f]{48}", approved.token)
        assert approved.token_expires_at == clock.now + timedelta(days=7)
        assert approved.processed_by == admin.id
        actions = [e.action for e in services.store.list_audit_entries()]
        assert f"Approved invite request id={pending.id}" in actions

    def test_second_approval_already_processed(self, services, pending, admin):
        services.invites.approve(pending.id, admin)

        with pytest.raises(AlreadyProcessedError) as excinfo:
            services.invites.approve(pending.id, admin)
        assert excinfo.value.status_code == 409

    def test_reject_then_approve(self, services, pending, admin):
        rejected = services.invites.reject(pending.id, admin)
        assert rejected.status == InviteStatus.REJECTED

        with pytest.raises(AlreadyProcessedError):
            services.invites.approve(pending.id, admin)

    def test_missing_request(self, services, admin):
        with pytest.raises(NotFoundError):
            services.invites.approve(999, admin)

    def test_non_admin_cannot_approve(self, services, pending, requester):
        with pytest.raises(ForbiddenError):
            services.invites.approve(pending.id, _principal(requester))

    def test_racing_approvals_single_winner(self, services, pending, admin):
        outcomes = []
        lock = threading.Lock()

        def approve():
            try:
                services.invites.approve(pending.id, admin)
                result = "ok"
            except AlreadyProcessedError:
                result = "lost"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=approve) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1


class TestRedeem:
    def test_round_trip_updates_role(self, services, pending, admin, requester):
        token = services.invites.approve(pending.id, admin).token

        account, access_token = services.invites.redeem(token, _principal(requester))

        assert account.role == Role.SECURITY_ANALYST
        claims = services.tokens.verify(access_token, purpose=TokenPurpose.ACCESS)
        assert claims.role == Role.SECURITY_ANALYST
        assert services.store.get_invite_request(pending.id).token is None
        assert services.store.get_invite_request(pending.id).status == InviteStatus.APPROVED

    def test_single_use(self, services, pending, admin, requester):
        token = services.invites.approve(pending.id, admin).token
        services.invites.redeem(token, _principal(requester))

        with pytest.raises(InvalidOrExpiredTokenError):
            services.invites.redeem(token, _principal(requester))

    def test_expired_token(self, services, pending, admin, requester, clock):
        token = services.invites.approve(pending.id, admin).token
        clock.advance(days=7, seconds=1)

        with pytest.raises(InvalidOrExpiredTokenError):
            services.invites.redeem(token, _principal(requester))
        assert services.store.get_account(requester.id).role == Role.STUDENT

    def test_unknown_token(self, services, requester):
        with pytest.raises(InvalidOrExpiredTokenError):
            services.invites.redeem("f" * 48, _principal(requester))

    def test_empty_token(self, services, requester):
        with pytest.raises(ValidationError):
            services.invites.redeem("  ", _principal(requester))


class TestRegisterWithToken:
    def test_role_must_match(self, services, pending, admin):
        token = services.invites.approve(pending.id, admin).token

        with pytest.raises(ForbiddenError):
            services.invites.register_with_token(
                name="New", email="new@example.com", password_hash="h", role=Role.ADMIN, token=token
            )
        assert services.store.get_account_by_email("new@example.com") is None
        assert services.store.get_invite_request(pending.id).token == token

    def test_creates_account_and_consumes_token(self, services, pending, admin):
        token = services.invites.approve(pending.id, admin).token

        account = services.invites.register_with_token(
            name="New",
            email="new@example.com",
            password_hash="h",
            role=Role.SECURITY_ANALYST,
            token=token,
        )

        assert account.role == Role.SECURITY_ANALYST
        assert services.store.get_invite_request(pending.id).token is None
