"""
Tests for permission resolution and role administration.

Tests cover:
- Scope semantics (global, organization, own)
- Inactive roles and permissions
- Fail-closed checks, including store calls past their deadline
- System role protection
- Edge conflicts and bulk replacement
"""

import asyncio
import uuid

import pytest

from trustcore.errors import (
    ApplicationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    RepositoryError,
)
from trustcore.schemas.permission import (
    ListRolesQuery,
    PermissionCreate,
    PermissionScope,
    PermissionUpdate,
    RoleCreate,
    RoleFilter,
    RoleUpdate,
)
from trustcore.schemas.security import SecurityEventQuery, SecurityEventType
from trustcore.services.permission_service import PermissionResolver
from trustcore.stores.permission_store import PermissionStore


async def grant(role_admin, user_id, resource, action, scope, assigned_by=None, role_name=None):
    """Create a role holding one permission and assign it to ``user_id``."""
    permission = await role_admin.create_permission(
        PermissionCreate(name=f"{resource}.{action}.{scope.value}", resource=resource, action=action, scope=scope)
    )
    role = await role_admin.create_role(RoleCreate(name=role_name or f"role-{uuid.uuid4().hex[:8]}"))
    await role_admin.assign_permission_to_role(role.id, permission.id)
    await role_admin.assign_role_to_user(user_id, role.id, assigned_by or user_id)
    return permission, role


# ============================================================================
# Scope resolution
# ============================================================================

async def test_global_grant_ignores_owner(seed, role_admin, resolver):
    """A global grant allows access whatever the resource owner is."""
    await grant(role_admin, seed.user_id, "leads", "read", PermissionScope.GLOBAL)

    assert await resolver.check_permission(seed.user_id, "leads", "read")
    assert await resolver.check_permission(seed.user_id, "leads", "read", resource_owner_id=uuid.uuid4())
    assert await resolver.check_permission(seed.user_id, "leads", "read", resource_owner_id=seed.user_id)


async def test_own_grant_requires_matching_owner(seed, role_admin, resolver):
    """An own grant allows access only when the owner is the principal."""
    await grant(role_admin, seed.user_id, "deals", "write", PermissionScope.OWN)

    assert await resolver.check_permission(seed.user_id, "deals", "write", resource_owner_id=seed.user_id)
    assert not await resolver.check_permission(seed.user_id, "deals", "write", resource_owner_id=seed.admin_id)
    assert not await resolver.check_permission(seed.user_id, "deals", "write")


async def test_organization_grant_checks_principal_organization(seed, role_admin, resolver):
    """An organization grant holds inside the principal's organization only."""
    await grant(role_admin, seed.user_id, "customers", "read", PermissionScope.ORGANIZATION)

    assert await resolver.check_permission(seed.user_id, "customers", "read", resource_organization_id=seed.org_id)
    assert not await resolver.check_permission(
        seed.user_id, "customers", "read", resource_organization_id=seed.other_org_id
    )
    # without an explicit organization the caller has already scoped the query
    assert await resolver.check_permission(seed.user_id, "customers", "read")


async def test_match_is_exact_and_case_sensitive(seed, role_admin, resolver):
    """Resource and action must match exactly; there are no wildcards."""
    await grant(role_admin, seed.user_id, "reports", "export", PermissionScope.GLOBAL)

    assert not await resolver.check_permission(seed.user_id, "Reports", "export")
    assert not await resolver.check_permission(seed.user_id, "reports", "EXPORT")
    assert not await resolver.check_permission(seed.user_id, "reports", "read")
    assert not await resolver.check_permission(seed.user_id, "*", "export")


async def test_inactive_permission_and_role_do_not_grant(seed, role_admin, resolver):
    """Deactivating the permission or the role revokes the grant."""
    permission, role = await grant(role_admin, seed.user_id, "documents", "read", PermissionScope.GLOBAL)
    assert await resolver.check_permission(seed.user_id, "documents", "read")

    await role_admin.update_permission(permission.id, PermissionUpdate(is_active=False))
    assert not await resolver.check_permission(seed.user_id, "documents", "read")

    await role_admin.update_permission(permission.id, PermissionUpdate(is_active=True))
    await role_admin.update_role(role.id, RoleUpdate(is_active=False))
    assert not await resolver.check_permission(seed.user_id, "documents", "read")


async def test_check_without_any_roles_is_denied(seed, resolver):
    """A user with no roles is denied without an error."""
    decision = await resolver.check_permission(seed.user_id, "leads", "read")
    assert not decision
    assert decision.error is None


async def test_check_fails_closed_on_store_error(seed, resolver, permission_store, monkeypatch):
    """A storage failure is a denial carrying the error, never an exception."""
    async def broken(*args, **kwargs):
        raise RepositoryError("database unavailable")

    monkeypatch.setattr(permission_store, "get_candidate_permissions", broken)
    decision = await resolver.check_permission(seed.user_id, "leads", "read")
    assert not decision
    assert isinstance(decision.error, RepositoryError)

    with pytest.raises(ApplicationError) as exc:
        await resolver.require_permission(seed.user_id, "leads", "read")
    assert not isinstance(exc.value, PermissionDeniedError)
    assert exc.value.message == "Unable to verify permissions"


async def test_check_past_store_deadline_fails_closed(seed, session_factory, users, monkeypatch):
    """A store call that outlives its deadline is a RepositoryError and the check is denied."""
    store = PermissionStore(session_factory, timeout=0.01)

    async def slow_candidates(user_id, resource, action):
        async def op(session):
            await asyncio.sleep(1)
            return []

        return await store._run("load candidate permissions", op)

    monkeypatch.setattr(store, "get_candidate_permissions", slow_candidates)
    decision = await PermissionResolver(store, users).check_permission(seed.user_id, "leads", "read")

    assert not decision
    assert isinstance(decision.error, RepositoryError)
    assert decision.error.message == "Timed out: load candidate permissions"


async def test_require_permission_raises_denied(seed, resolver):
    with pytest.raises(PermissionDeniedError) as exc:
        await resolver.require_permission(seed.user_id, "settings", "manage")
    assert exc.value.details["resource"] == "settings"
    assert exc.value.details["action"] == "manage"


async def test_user_with_roles_lists_effective_permissions(seed, role_admin, resolver):
    """all_permissions is the union over active roles of active permissions."""
    await grant(role_admin, seed.user_id, "leads", "read", PermissionScope.GLOBAL)
    inactive, _ = await grant(role_admin, seed.user_id, "leads", "delete", PermissionScope.GLOBAL)
    await role_admin.update_permission(inactive.id, PermissionUpdate(is_active=False))

    view = await resolver.get_user_with_roles(seed.user_id)
    assert view.email == "user@acme.io"
    assert len(view.roles) == 2
    assert [(p.resource, p.action) for p in view.all_permissions] == [("leads", "read")]
    assert [(p.resource, p.action) for p in await resolver.get_user_permissions(seed.user_id)] == [("leads", "read")]

    assert await resolver.get_user_with_roles(uuid.uuid4()) is None


# ============================================================================
# Role administration
# ============================================================================

async def test_system_role_cannot_be_deleted_or_modified(seed, role_admin):
    """System roles survive delete attempts; their edges stay manageable."""
    role = await role_admin.create_role(RoleCreate(name="Administrator", is_system=True))

    with pytest.raises(ApplicationError, match="Cannot delete system role"):
        await role_admin.delete_role(role.id)
    with pytest.raises(ApplicationError, match="Cannot modify system role"):
        await role_admin.update_role(role.id, RoleUpdate(name="Renamed"))

    remaining = await role_admin.find_role(role.id)
    assert remaining is not None
    assert remaining.name == "Administrator"

    permission = await role_admin.create_permission(
        PermissionCreate(name="users.manage", resource="users", action="manage", scope=PermissionScope.GLOBAL)
    )
    await role_admin.assign_permission_to_role(role.id, permission.id)
    assert [p.id for p in await role_admin.get_role_permissions(role.id)] == [permission.id]


async def test_delete_role_removes_edges(seed, role_admin, resolver):
    _, role = await grant(role_admin, seed.user_id, "activities", "read", PermissionScope.GLOBAL)
    await role_admin.delete_role(role.id)

    assert await role_admin.find_role(role.id) is None
    assert await role_admin.get_user_roles(seed.user_id) == []
    assert not await resolver.check_permission(seed.user_id, "activities", "read")


async def test_duplicate_edges_conflict(seed, role_admin):
    permission, role = await grant(role_admin, seed.user_id, "leads", "write", PermissionScope.OWN)

    with pytest.raises(ConflictError):
        await role_admin.assign_permission_to_role(role.id, permission.id)
    with pytest.raises(ConflictError):
        await role_admin.assign_role_to_user(seed.user_id, role.id, seed.admin_id)


async def test_missing_edges_and_entities_not_found(seed, role_admin):
    role = await role_admin.create_role(RoleCreate(name="Sales"))

    with pytest.raises(NotFoundError):
        await role_admin.remove_role_from_user(seed.user_id, role.id)
    with pytest.raises(NotFoundError):
        await role_admin.assign_permission_to_role(role.id, uuid.uuid4())
    with pytest.raises(NotFoundError):
        await role_admin.assign_role_to_user(uuid.uuid4(), role.id, seed.admin_id)
    with pytest.raises(NotFoundError):
        await role_admin.delete_role(uuid.uuid4())


async def test_set_user_roles_is_idempotent(seed, role_admin, permission_store, clock):
    """Replacing with the same set keeps existing rows and their assigned_at."""
    sales = await role_admin.create_role(RoleCreate(name="Sales"))
    support = await role_admin.create_role(RoleCreate(name="Support"))
    finance = await role_admin.create_role(RoleCreate(name="Finance"))

    first = await role_admin.set_user_roles(seed.user_id, [sales.id, support.id], seed.admin_id, organization_id=seed.org_id)
    clock.advance(hours=1)
    second = await role_admin.set_user_roles(seed.user_id, [support.id, sales.id], seed.admin_id, organization_id=seed.org_id)

    assert {(e.id, e.role_id, e.assigned_at) for e in first} == {(e.id, e.role_id, e.assigned_at) for e in second}

    clock.advance(hours=1)
    third = await role_admin.set_user_roles(seed.user_id, [support.id, finance.id], seed.second_admin_id)
    by_role = {e.role_id: e for e in third}
    assert set(by_role) == {support.id, finance.id}
    kept = next(e for e in first if e.role_id == support.id)
    assert by_role[support.id].id == kept.id
    assert by_role[support.id].assigned_by == seed.admin_id
    assert by_role[finance.id].assigned_by == seed.second_admin_id


async def test_set_user_roles_with_unknown_role_changes_nothing(seed, role_admin):
    sales = await role_admin.create_role(RoleCreate(name="Sales"))
    await role_admin.set_user_roles(seed.user_id, [sales.id], seed.admin_id)

    with pytest.raises(NotFoundError):
        await role_admin.set_user_roles(seed.user_id, [uuid.uuid4()], seed.admin_id)
    assert [r.id for r in await role_admin.get_user_roles(seed.user_id)] == [sales.id]


async def test_set_role_permissions_replaces_set(seed, role_admin):
    role = await role_admin.create_role(RoleCreate(name="Analyst"))
    read = await role_admin.create_permission(PermissionCreate(name="r", resource="reports", action="read"))
    export = await role_admin.create_permission(PermissionCreate(name="e", resource="reports", action="export"))

    await role_admin.set_role_permissions(role.id, [read.id, export.id])
    result = await role_admin.set_role_permissions(role.id, [export.id])

    assert [p.id for p in result] == [export.id]
    with_permissions = await role_admin.find_role_with_permissions(role.id)
    assert [p.id for p in with_permissions.permissions] == [export.id]


async def test_edge_changes_are_recorded(seed, role_admin, events):
    """Edge mutations with an organization record permission_changed events."""
    role = await role_admin.create_role(RoleCreate(name="Sales"))
    await role_admin.assign_role_to_user(seed.user_id, role.id, seed.admin_id, organization_id=seed.org_id)
    await role_admin.remove_role_from_user(seed.user_id, role.id, organization_id=seed.org_id, actor_id=seed.admin_id)

    page = await events.list_security_events(
        seed.org_id, SecurityEventQuery(event_type=SecurityEventType.PERMISSION_CHANGED, sort_order="asc")
    )
    assert page.count == 2
    assert [e.metadata["action"] for e in page.items] == ["role_assigned", "role_removed"]
    assert all(e.target_user_id == seed.user_id for e in page.items)


async def test_list_roles_filters_and_paginates(seed, role_admin):
    await role_admin.create_role(RoleCreate(name="Administrator", is_system=True))
    for name in ("Sales", "Support", "Finance"):
        await role_admin.create_role(RoleCreate(name=name))

    system = await role_admin.list_roles(ListRolesQuery(filter=RoleFilter(is_system=True)))
    assert [r.name for r in system.items] == ["Administrator"]

    page = await role_admin.list_roles(ListRolesQuery(page=2, limit=3))
    assert page.count == 4
    assert len(page.items) == 1
