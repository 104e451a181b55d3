"""
Tests for the security policy store and the security event log.

Tests cover:
- Lazy default settings and partial updates
- Settings validation
- IP allow/block lists (deny-first, CIDR, IPv6)
- Session, email-domain and password-expiry checks
- Event metadata validation and redaction
- Event log lines written only for stored events
- Batched retention cleanup and its minimum retention period
"""

import logging
from datetime import timedelta

import pytest

from trustcore.database import create_engine, create_session_factory
from trustcore.errors import ConflictError, NotFoundError, RepositoryError, ValidationError
from trustcore.schemas.security import (
    IPListType,
    SecurityEventCreate,
    SecurityEventQuery,
    SecurityEventType,
    Severity,
)
from trustcore.stores.security_event_log import SecurityEventLog, validate_event_metadata


# ============================================================================
# Settings
# ============================================================================

async def test_settings_created_with_defaults(seed, policies):
    assert await policies.get_security_settings(seed.org_id) is None

    settings = await policies.get_or_create_security_settings(seed.org_id)
    assert settings.password_min_length == 8
    assert settings.max_login_attempts == 5
    assert settings.lockout_duration_minutes == 30
    assert settings.password_expiration_days is None
    assert settings.ip_allowlist == [] and settings.ip_blocklist == []

    again = await policies.get_or_create_security_settings(seed.org_id)
    assert again.id == settings.id
    with pytest.raises(ConflictError):
        await policies.create_default_security_settings(seed.org_id)


async def test_partial_update_changes_only_given_fields(seed, policies):
    updated = await policies.update_security_settings(
        seed.org_id,
        {
            "password_min_length": 12,
            "allowed_email_domains": ["Acme.io", "acme.io", "partner.example.org"],
            "ip_blocklist": ["198.51.100.1", "10.0.0.0/8"],
        },
    )
    assert updated.password_min_length == 12
    assert updated.max_login_attempts == 5
    assert updated.allowed_email_domains == ["acme.io", "partner.example.org"]
    assert sorted(updated.ip_blocklist) == ["10.0.0.0/8", "198.51.100.1"]

    # lists given again replace the stored entries
    updated = await policies.update_security_settings(seed.org_id, {"ip_blocklist": ["10.0.0.0/8"]})
    assert updated.ip_blocklist == ["10.0.0.0/8"]
    assert updated.password_min_length == 12


@pytest.mark.parametrize(
    "data, field",
    [
        ({"max_login_attempts": 1}, "max_login_attempts"),
        ({"password_min_length": 2}, "password_min_length"),
        ({"lockout_duration_minutes": 0}, "lockout_duration_minutes"),
        ({"session_timeout_minutes": 5}, "session_timeout_minutes"),
        ({"password_expiration_days": 0}, "password_expiration_days"),
        ({"ip_allowlist": ["not-an-ip"]}, "ip_allowlist"),
        ({"blocked_email_domains": ["bad domain"]}, "blocked_email_domains"),
        ({"favourite_colour": "blue"}, "favourite_colour"),
    ],
)
async def test_invalid_settings_are_rejected(seed, policies, data, field):
    with pytest.raises(ValidationError) as exc:
        await policies.update_security_settings(seed.org_id, data)
    assert field in exc.value.details["fields"]


async def test_null_only_allowed_for_optional_settings(seed, policies):
    with pytest.raises(ValidationError):
        await policies.update_security_settings(seed.org_id, {"max_login_attempts": None})

    await policies.update_security_settings(seed.org_id, {"password_expiration_days": 90})
    updated = await policies.update_security_settings(seed.org_id, {"password_expiration_days": None})
    assert updated.password_expiration_days is None


# ============================================================================
# IP lists
# ============================================================================

async def test_block_entries_win_over_allow_entries(seed, policies):
    await policies.add_ip_entry(seed.org_id, "10.0.0.0/8", IPListType.ALLOW, "Office network")
    await policies.add_ip_entry(seed.org_id, "10.1.2.3", IPListType.BLOCK, "Compromised host")

    assert await policies.is_ip_blocked(seed.org_id, "10.1.2.3")
    assert not await policies.is_ip_blocked(seed.org_id, "10.2.0.1")
    # outside a non-empty allowlist
    assert await policies.is_ip_blocked(seed.org_id, "192.168.1.1")


async def test_no_lists_blocks_nothing(seed, policies):
    assert not await policies.is_ip_blocked(seed.org_id, "192.168.1.1")
    assert not await policies.is_ip_blocked(seed.org_id, "2001:db8::1")


async def test_ipv6_networks_match(seed, policies):
    await policies.add_ip_entry(seed.org_id, "2001:db8::/32", IPListType.BLOCK, "Test range")
    assert await policies.is_ip_blocked(seed.org_id, "2001:db8::42")
    assert not await policies.is_ip_blocked(seed.org_id, "2001:db9::1")
    assert not await policies.is_ip_blocked(seed.org_id, "10.0.0.1")


async def test_ip_entry_validation(seed, policies):
    with pytest.raises(ValidationError):
        await policies.add_ip_entry(seed.org_id, "999.1.1.1", IPListType.BLOCK, "Typo")
    with pytest.raises(ValidationError):
        await policies.add_ip_entry(seed.org_id, "10.0.0.1", IPListType.BLOCK, "  ")

    entry = await policies.add_ip_entry(seed.org_id, "10.0.0.1/32", IPListType.BLOCK, "Scanner")
    assert entry.ip_address == "10.0.0.1"
    with pytest.raises(ConflictError):
        await policies.add_ip_entry(seed.org_id, "10.0.0.1", IPListType.BLOCK, "Scanner again")

    await policies.remove_ip_entry(seed.org_id, "10.0.0.1", IPListType.BLOCK)
    with pytest.raises(NotFoundError):
        await policies.remove_ip_entry(seed.org_id, "10.0.0.1", IPListType.BLOCK)


async def test_ip_lists_are_per_organization(seed, policies):
    await policies.add_ip_entry(seed.org_id, "198.51.100.0/24", IPListType.BLOCK, "Abuse")
    assert not await policies.is_ip_blocked(seed.other_org_id, "198.51.100.10")


# ============================================================================
# Policy checks
# ============================================================================

async def test_session_expiry(seed, policies, clock):
    await policies.update_security_settings(seed.org_id, {"session_timeout_minutes": 60})
    last_activity = clock()

    assert not await policies.is_session_expired(seed.org_id, last_activity)
    clock.advance(minutes=61)
    assert await policies.is_session_expired(seed.org_id, last_activity)


async def test_email_domain_permission(seed, policies):
    assert await policies.is_email_domain_permitted(seed.org_id, "anyone@anywhere.com")

    await policies.update_security_settings(
        seed.org_id, {"allowed_email_domains": ["acme.io"], "blocked_email_domains": ["spam.io"]}
    )
    assert await policies.is_email_domain_permitted(seed.org_id, "new@ACME.io")
    assert not await policies.is_email_domain_permitted(seed.org_id, "new@spam.io")
    assert not await policies.is_email_domain_permitted(seed.org_id, "new@elsewhere.com")


async def test_password_expiry_check(seed, policies, clock):
    changed_at = clock()
    assert not await policies.is_password_expired(seed.org_id, changed_at)

    await policies.update_security_settings(seed.org_id, {"password_expiration_days": 30})
    assert not await policies.is_password_expired(seed.org_id, changed_at)
    assert not await policies.is_password_expired(seed.org_id, None)
    clock.advance(days=31)
    assert await policies.is_password_expired(seed.org_id, changed_at)


# ============================================================================
# Event log
# ============================================================================

def test_unknown_metadata_keys_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_event_metadata(SecurityEventType.LOGIN_FAILED, {"email": "a@acme.io", "shoe_size": 44})
    assert "shoe_size" in exc.value.details["fields"]


def test_secret_values_are_redacted():
    cleaned = validate_event_metadata(
        SecurityEventType.SUSPICIOUS_ACTIVITY,
        {"reason": "leaked", "details": {"token": "abc", "nested": [{"password": "hunter2"}]}},
    )
    assert cleaned["details"]["token"] == "***REDACTED***"
    assert cleaned["details"]["nested"][0]["password"] == "***REDACTED***"
    assert cleaned["reason"] == "leaked"


async def test_create_event_rejects_bad_metadata(seed, events):
    with pytest.raises(ValidationError):
        await events.create_security_event(
            SecurityEventCreate(
                organization_id=seed.org_id,
                event_type=SecurityEventType.LOGIN_SUCCESS,
                severity=Severity.LOW,
                description="User logged in",
                metadata={"unexpected": True},
                success=True,
            )
        )
    assert await events.count_events(seed.org_id) == 0


async def test_stored_event_is_logged(seed, events, caplog):
    with caplog.at_level(logging.INFO, logger="trustcore.stores.security_event_log"):
        event = await events.create_security_event(
            SecurityEventCreate(
                organization_id=seed.org_id,
                event_type=SecurityEventType.LOGIN_FAILED,
                severity=Severity.LOW,
                description="Failed login attempt",
                success=False,
            )
        )
    assert f"SECURITY_EVENT id={event.id} type=login_failed" in caplog.text


async def test_failed_insert_is_not_logged_as_event(seed, tmp_path, caplog):
    # no tables in this database, so the insert fails
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    log = SecurityEventLog(create_session_factory(engine))
    try:
        with caplog.at_level(logging.INFO, logger="trustcore.stores"):
            with pytest.raises(RepositoryError):
                await log.create_security_event(
                    SecurityEventCreate(
                        organization_id=seed.org_id,
                        event_type=SecurityEventType.LOGIN_FAILED,
                        severity=Severity.LOW,
                        description="Failed login attempt",
                        success=False,
                    )
                )
    finally:
        await engine.dispose()
    assert "SECURITY_EVENT" not in caplog.text
    assert "Store operation failed: create security event" in caplog.text



async def test_record_event_never_raises(seed, events):
    result = await events.record_event(
        organization_id=seed.org_id,
        event_type=SecurityEventType.LOGIN_SUCCESS,
        severity=Severity.LOW,
        description="",
        success=True,
    )
    assert result is None


async def test_list_events_filters_and_sorts(seed, events):
    for severity in (Severity.LOW, Severity.HIGH, Severity.MEDIUM):
        await events.record_event(
            organization_id=seed.org_id,
            event_type=SecurityEventType.SUSPICIOUS_ACTIVITY,
            severity=severity,
            description=f"{severity.value} signal",
            success=False,
            ip_address="192.0.2.1",
        )
    await events.record_event(
        organization_id=seed.org_id,
        event_type=SecurityEventType.LOGIN_SUCCESS,
        severity=Severity.LOW,
        description="User logged in",
        success=True,
        user_id=seed.user_id,
    )

    page = await events.list_security_events(seed.org_id, SecurityEventQuery(success=False, sort_order="asc"))
    assert page.count == 3
    assert [e.severity for e in page.items] == [Severity.LOW, Severity.HIGH, Severity.MEDIUM]

    page = await events.list_security_events(seed.org_id, SecurityEventQuery(keyword="high"))
    assert [e.description for e in page.items] == ["high signal"]

    page = await events.list_security_events(seed.org_id, SecurityEventQuery(user_id=seed.user_id))
    assert page.count == 1
    assert await events.find_security_event_by_id(page.items[0].id) == page.items[0]


async def test_cleanup_deletes_old_events_in_batches(seed, events, clock):
    for i in range(7):
        await events.record_event(
            organization_id=seed.org_id,
            event_type=SecurityEventType.LOGIN_SUCCESS,
            severity=Severity.LOW,
            description=f"old login {i}",
            success=True,
        )
    clock.advance(days=45)
    for i in range(2):
        await events.record_event(
            organization_id=seed.org_id,
            event_type=SecurityEventType.LOGIN_SUCCESS,
            severity=Severity.LOW,
            description=f"recent login {i}",
            success=True,
        )

    # batch size is 3 in the fixture
    deleted = await events.cleanup_old_events(seed.org_id, retention_days=30)
    assert deleted == 7
    assert await events.count_events(seed.org_id) == 2
    assert await events.count_events(seed.org_id, since=clock() - timedelta(days=1)) == 2

    with pytest.raises(ValidationError):
        await events.cleanup_old_events(seed.org_id, retention_days=0)


async def test_cleanup_keeps_events_inside_retention_floor(seed, events, clock):
    await events.record_event(
        organization_id=seed.org_id,
        event_type=SecurityEventType.LOGIN_FAILED,
        severity=Severity.LOW,
        description="failed login",
        success=False,
    )
    clock.advance(days=2)

    for days in (1, 29):
        with pytest.raises(ValidationError) as exc:
            await events.cleanup_old_events(seed.org_id, retention_days=days)
        assert exc.value.details == {"retention_days": days}
    assert await events.count_events(seed.org_id) == 1
