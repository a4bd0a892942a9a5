"""Tests for backup-code account recovery."""

import re

import pytest

from coursegate.service.errors import (
    ExpiredError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    ValidationError,
)
from coursegate.service.recovery import generate_backup_code
from coursegate.service.roles import Role


@pytest.fixture
def account(services):
    return services.store.create_account(
        "Kim", "kim@example.com", services.passwords.hash("old-password"), Role.STUDENT
    )


@pytest.fixture
def backup(services, account):
    return services.recovery.issue_backup_code(account.id)


class TestBackupCodes:
    def test_format(self):
        for _ in range(50):
            assert re.fullmatch(r"\d{6}", generate_backup_code())

    def test_issue_stores_code_and_audits(self, services, account, backup, clock):
        stored = services.store.get_account(account.id)
        assert stored.backup_code == backup.code
        assert stored.backup_code_generated_at == clock.now
        actions = [e.action for e in services.store.list_audit_entries()]
        assert "Regenerated backup code" in actions

    def test_issue_for_missing_account(self, services):
        with pytest.raises(NotFoundError):
            services.recovery.issue_backup_code(404)


class TestStart:
    def test_reports_existence(self, services, account):
        assert services.recovery.start("KIM@example.com") is True
        assert services.recovery.start("nobody@example.com") is False


class TestVerify:
    @pytest.mark.parametrize("code", ["12345", "1234567", "12a456", "", "１２３４５６"])
    def test_rejects_malformed_code(self, services, account, backup, code):
        with pytest.raises(ValidationError):
            services.recovery.verify(account.email, code)

    def test_wrong_code(self, services, account, backup):
        wrong = "000000" if backup.code != "000000" else "111111"
        with pytest.raises(InvalidCredentialsError):
            services.recovery.verify(account.email, wrong)

    def test_unknown_email(self, services, backup):
        with pytest.raises(InvalidCredentialsError):
            services.recovery.verify("nobody@example.com", backup.code)

    def test_just_inside_lifetime(self, services, account, backup, clock):
        clock.advance(hours=24, seconds=-1)

        assert services.recovery.verify(account.email, backup.code)

    def test_just_outside_lifetime(self, services, account, backup, clock):
        clock.advance(hours=24, seconds=1)

        with pytest.raises(ExpiredError) as excinfo:
            services.recovery.verify(account.email, backup.code)
        assert excinfo.value.error_code == "expired"

    def test_missing_generation_time_is_expired(self, services, account, backup):
        services.store.accounts[account.id].backup_code_generated_at = None

        with pytest.raises(ExpiredError):
            services.recovery.verify(account.email, backup.code)


class TestReset:
    def test_full_flow(self, services, account, backup):
        assert services.recovery.start(account.email)
        reset_token = services.recovery.verify(account.email, backup.code)

        services.recovery.reset(reset_token, "brand-new-password")

        stored = services.store.get_account(account.id)
        assert services.passwords.verify(stored.password_hash, "brand-new-password")
        assert not services.passwords.verify(stored.password_hash, "old-password")
        assert stored.backup_code is None
        actions = [e.action for e in services.store.list_audit_entries()]
        assert "Completed backup code verification for password reset" in actions
        assert "Password reset via backup code flow" in actions

    def test_code_cannot_be_reused_after_reset(self, services, account, backup):
        reset_token = services.recovery.verify(account.email, backup.code)
        services.recovery.reset(reset_token, "brand-new-password")

        with pytest.raises(InvalidCredentialsError):
            services.recovery.verify(account.email, backup.code)

    def test_access_token_cannot_reset(self, services, account):
        with pytest.raises(InvalidOrExpiredTokenError):
            services.recovery.reset(services.tokens.issue_access(account), "brand-new-password")

    def test_expired_reset_token(self, services, account, backup, clock):
        reset_token = services.recovery.verify(account.email, backup.code)
        clock.advance(minutes=16)

        with pytest.raises(InvalidOrExpiredTokenError):
            services.recovery.reset(reset_token, "brand-new-password")

    def test_short_password(self, services, account, backup):
        reset_token = services.recovery.verify(account.email, backup.code)

        with pytest.raises(ValidationError):
            services.recovery.reset(reset_token, "short")
