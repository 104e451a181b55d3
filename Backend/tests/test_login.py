"""
Tests for the login flow and password changes.

Tests cover:
- Generic credential failures
- IP blocking and maintenance mode
- Password expiry and two-factor flags
- Password policy violations and password history
"""

import pytest
from sqlalchemy import update

from trustcore.errors import (
    ApplicationError,
    ConflictError,
    InvalidCredentialsError,
    IPBlockedError,
    MaintenanceModeError,
    PasswordPolicyError,
)
from trustcore.models.directory import User
from trustcore.schemas.security import IPListType, SecurityEventQuery, SecurityEventType
from trustcore.services.login_service import DEFAULT_MAINTENANCE_MESSAGE
from trustcore.services.password_policy import evaluate_password_policy
from conftest import ADMIN_PASSWORD, USER_PASSWORD


# ============================================================================
# Login
# ============================================================================

async def test_login_success_records_event_and_last_login(seed, login_service, users, events):
    result = await login_service.login(seed.org_id, "User@Acme.io", USER_PASSWORD, ip_address="203.0.113.5")

    assert result.user.id == seed.user_id
    assert result.password_expired is False
    assert result.two_factor_required is False
    assert (await users.get_user(seed.user_id)).last_login_at == result.user.last_login_at

    page = await events.list_security_events(
        seed.org_id, SecurityEventQuery(event_type=SecurityEventType.LOGIN_SUCCESS)
    )
    assert page.count == 1
    assert page.items[0].ip_address == "203.0.113.5"


async def test_unknown_email_and_wrong_password_fail_identically(seed, login_service, events):
    with pytest.raises(InvalidCredentialsError) as unknown:
        await login_service.login(seed.org_id, "nobody@acme.io", USER_PASSWORD)
    with pytest.raises(InvalidCredentialsError) as wrong:
        await login_service.login(seed.org_id, "user@acme.io", "not-the-password")

    assert unknown.value.message == wrong.value.message == "Invalid email or password"

    failures = await events.list_security_events(
        seed.org_id, SecurityEventQuery(event_type=SecurityEventType.LOGIN_FAILED, sort_order="asc")
    )
    assert failures.count == 2
    assert failures.items[0].user_id is None
    assert failures.items[1].user_id == seed.user_id


async def test_user_of_another_organization_cannot_log_in(seed, login_service):
    with pytest.raises(InvalidCredentialsError):
        await login_service.login(seed.org_id, "someone@globex.io", USER_PASSWORD)


async def test_blocked_ip_is_rejected_before_credentials(seed, login_service, policies, events):
    await policies.add_ip_entry(seed.org_id, "203.0.113.0/24", IPListType.BLOCK, "Abuse")

    with pytest.raises(IPBlockedError):
        await login_service.login(seed.org_id, "user@acme.io", USER_PASSWORD, ip_address="203.0.113.77")

    attempts = await events.list_security_events(
        seed.org_id, SecurityEventQuery(event_type=SecurityEventType.UNAUTHORIZED_ACCESS_ATTEMPT)
    )
    assert attempts.count == 1
    assert attempts.items[0].metadata["reason"] == "ip_blocked"


async def test_inactive_user_is_rejected(seed, login_service, session_factory):
    async with session_factory() as session:
        await session.execute(update(User).where(User.id == seed.user_id).values(is_active=False))
        await session.commit()

    with pytest.raises(ApplicationError, match="Account is deactivated"):
        await login_service.login(seed.org_id, "user@acme.io", USER_PASSWORD)


async def test_maintenance_mode_admits_admins_only(seed, login_service, policies):
    await policies.update_security_settings(seed.org_id, {"maintenance_mode": True})
    with pytest.raises(MaintenanceModeError) as exc:
        await login_service.login(seed.org_id, "user@acme.io", USER_PASSWORD)
    assert exc.value.message == DEFAULT_MAINTENANCE_MESSAGE

    await policies.update_security_settings(seed.org_id, {"maintenance_message": "Back at 14:00 UTC"})
    with pytest.raises(MaintenanceModeError, match="Back at 14:00 UTC"):
        await login_service.login(seed.org_id, "user@acme.io", USER_PASSWORD)

    result = await login_service.login(seed.org_id, "admin@acme.io", ADMIN_PASSWORD)
    assert result.user.is_admin


async def test_password_expiry_and_two_factor_flags(seed, login_service, policies, clock):
    await policies.update_security_settings(
        seed.org_id, {"password_expiration_days": 30, "two_factor_required": True}
    )
    result = await login_service.login(seed.org_id, "user@acme.io", USER_PASSWORD)
    assert result.password_expired is False
    assert result.two_factor_required is True

    clock.advance(days=31)
    result = await login_service.login(seed.org_id, "user@acme.io", USER_PASSWORD)
    assert result.password_expired is True


# ============================================================================
# Password policy
# ============================================================================

async def test_policy_lists_every_violation(seed, password_policy, policies):
    result = await password_policy.validate_password_policy(seed.org_id, "abc")
    assert not result.is_valid
    assert result.violations == [
        "Password must be at least 8 characters long",
        "Password must contain at least one uppercase letter",
        "Password must contain at least one number",
    ]

    await policies.update_security_settings(seed.org_id, {"password_require_special_chars": True})
    settings = await policies.get_security_settings(seed.org_id)
    assert evaluate_password_policy(settings, "Abcdefg1") == ["Password must contain at least one special character"]
    assert evaluate_password_policy(settings, "Abcdefg1!") == []


async def test_change_password_rejects_policy_violations(seed, password_change):
    with pytest.raises(PasswordPolicyError) as exc:
        await password_change.change_password(seed.org_id, seed.user_id, USER_PASSWORD, "short")
    assert "Password must be at least 8 characters long" in exc.value.violations


async def test_change_password_requires_current_password(seed, password_change):
    with pytest.raises(InvalidCredentialsError):
        await password_change.change_password(seed.org_id, seed.user_id, "wrong", "Brand-New-Pass1")


async def test_history_of_three_rejects_reuse_and_evicts_oldest(seed, password_change, policies, login_service):
    await policies.update_security_settings(seed.org_id, {"password_history_count": 3})

    current = USER_PASSWORD
    for new in ("First-Pass1", "Second-Pass2", "Third-Pass3"):
        await password_change.change_password(seed.org_id, seed.user_id, current, new)
        current = new

    with pytest.raises(ConflictError):
        await password_change.change_password(seed.org_id, seed.user_id, current, "First-Pass1")

    await password_change.change_password(seed.org_id, seed.user_id, current, "Fourth-Pass4")
    # First-Pass1 has been evicted by the fourth change
    user = await password_change.change_password(seed.org_id, seed.user_id, "Fourth-Pass4", "First-Pass1")
    assert user.password_changed_at is not None

    result = await login_service.login(seed.org_id, "user@acme.io", "First-Pass1")
    assert result.user.id == seed.user_id


async def test_history_disabled_allows_reuse(seed, password_change, password_policy):
    await password_change.change_password(seed.org_id, seed.user_id, USER_PASSWORD, "First-Pass1")
    await password_change.change_password(seed.org_id, seed.user_id, "First-Pass1", USER_PASSWORD)

    assert not await password_policy.check_password_history(seed.org_id, seed.user_id, "First-Pass1")
