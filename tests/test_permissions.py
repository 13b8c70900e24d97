from datetime import timedelta

import pytest

from gatehouse.service.activity import Actions, ActivityFilter
from gatehouse.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)


async def _seed_roles(services):
    roles = await services.permissions.ensure_system_roles()
    return {role.name: role for role in roles}


async def test_system_roles_are_created_once(services):
    first = await _seed_roles(services)
    second = await _seed_roles(services)
    assert set(first) == {"super-admin", "admin", "user"}
    assert {r.id for r in first.values()} == {r.id for r in second.values()}
    assert all(r.is_system_role for r in first.values())


async def test_permissions_union_across_roles(services):
    user = services.create_user()
    resolver = services.permissions
    writer = await resolver.create_role("writer", ["write", "read"])
    deleter = await resolver.create_role("deleter", ["delete"])
    await resolver.assign_role(user.id, writer.id)
    await resolver.assign_role(user.id, deleter.id)

    assert await resolver.get_user_permissions(user.id) == {"read", "write", "delete"}
    assert await resolver.has_permission(user.id, "write")
    assert not await resolver.has_permission(user.id, "manage_users")
    assert await resolver.has_any_permission(user.id, ["nope", "delete"])
    assert not await resolver.has_all_permissions(user.id, ["write", "nope"])
    assert await resolver.has_all_permissions(user.id, [])


async def test_admin_permission_grants_everything(services):
    roles = await _seed_roles(services)
    user = services.create_user()
    await services.permissions.assign_role(user.id, roles["super-admin"].id)
    assert await services.permissions.has_permission(user.id, "anything")
    assert await services.permissions.has_all_permissions(user.id, ["write", "delete"])


async def test_revoked_role_stops_working_immediately(services):
    user = services.create_user()
    role = await services.permissions.create_role("writer", ["write"])
    await services.permissions.assign_role(user.id, role.id)
    assert await services.permissions.remove_role(user.id, role.id)
    assert not await services.permissions.has_permission(user.id, "write")
    assert not await services.permissions.remove_role(user.id, role.id)


async def test_role_validation_and_conflicts(services):
    resolver = services.permissions
    with pytest.raises(ValidationError):
        await resolver.create_role("Bad Name!", [])
    with pytest.raises(ValidationError):
        await resolver.create_role("editors", ["DROP TABLE"])
    role = await resolver.create_role("Editors", ["read"])
    assert role.name == "editors"
    with pytest.raises(ConflictError):
        await resolver.create_role("editors", [])

    user = services.create_user()
    await resolver.assign_role(user.id, role.id)
    with pytest.raises(ConflictError):
        await resolver.assign_role(user.id, role.id)
    with pytest.raises(NotFoundError):
        await resolver.assign_role("ghost", role.id)
    with pytest.raises(NotFoundError):
        await resolver.assign_role(user.id, "ghost")


async def test_system_role_rules(services):
    roles = await _seed_roles(services)
    resolver = services.permissions
    with pytest.raises(ForbiddenError):
        await resolver.update_role_permissions(roles["super-admin"].id, ["read"])
    with pytest.raises(ForbiddenError):
        await resolver.delete_role(roles["user"].id)

    updated = await resolver.update_role_permissions(roles["admin"].id, ["view_logs", "view_logs"])
    assert updated.permissions == ["view_logs"]


async def test_description_only_update_keeps_permissions(services):
    resolver = services.permissions
    role = await resolver.create_role("editors", ["read", "write"])
    updated = await resolver.update_role_permissions(role.id, None, description="Content editors")
    assert updated.permissions == ["read", "write"]
    assert updated.description == "Content editors"

    cleared = await resolver.update_role_permissions(role.id, [])
    assert cleared.permissions == []


async def test_delete_role_refuses_while_assigned(services):
    resolver = services.permissions
    role = await resolver.create_role("temp", ["read"])
    user = services.create_user()
    await resolver.assign_role(user.id, role.id)
    with pytest.raises(ConflictError):
        await resolver.delete_role(role.id)
    await resolver.remove_role(user.id, role.id)
    await resolver.delete_role(role.id)
    assert services.store.get_role(role.id) is None
    with pytest.raises(NotFoundError):
        await resolver.delete_role(role.id)


async def test_list_roles_reports_user_counts(services):
    roles = await _seed_roles(services)
    user = services.create_user()
    await services.permissions.assign_role(user.id, roles["user"].id)
    listed = {r["name"]: r for r in await services.permissions.list_roles()}
    assert listed["user"]["user_count"] == 1
    assert listed["admin"]["user_count"] == 0


async def test_node_permissions_exact_path_and_expiry(services, clock):
    resolver = services.permissions
    user = services.create_user()
    grant = await resolver.grant_node_permission(
        user.id,
        "projects/alpha/",
        ["write"],
        granted_by="admin-1",
        expires_at=clock.now + timedelta(hours=1),
    )
    assert grant.node_path == "/projects/alpha"
    assert await resolver.has_node_permission(user.id, "/projects/alpha", "write")
    assert not await resolver.has_node_permission(user.id, "/projects/alpha/child", "write")
    assert not await resolver.has_node_permission(user.id, "/projects/alpha", "delete")

    clock.advance(hours=1)
    assert not await resolver.has_node_permission(user.id, "/projects/alpha", "write")


async def test_node_permission_falls_back_to_global(services):
    resolver = services.permissions
    user = services.create_user()
    role = await resolver.create_role("writer", ["write"])
    await resolver.assign_role(user.id, role.id)
    assert await resolver.has_node_permission(user.id, "/anywhere", "write")


async def test_node_permission_validation_and_revoke(services, clock):
    resolver = services.permissions
    user = services.create_user()
    with pytest.raises(ValidationError):
        await resolver.grant_node_permission(user.id, "/a", [])
    with pytest.raises(ValidationError):
        await resolver.grant_node_permission(
            user.id, "/a", ["read"], expires_at=clock.now - timedelta(seconds=1)
        )
    with pytest.raises(NotFoundError):
        await resolver.grant_node_permission("ghost", "/a", ["read"])

    grant = await resolver.grant_node_permission(user.id, "/a", ["read"])
    await resolver.revoke_node_permission(grant.id, actor_id="admin-1")
    assert not await resolver.has_node_permission(user.id, "/a", "read")
    with pytest.raises(NotFoundError):
        await resolver.revoke_node_permission(grant.id)


async def test_mutations_are_audited(services, clock):
    resolver = services.permissions
    user = services.create_user()
    role = await resolver.create_role("writer", ["write"], actor_id="admin-1")
    clock.advance(seconds=1)
    await resolver.assign_role(user.id, role.id, actor_id="admin-1")
    clock.advance(seconds=1)
    await resolver.remove_role(user.id, role.id, actor_id="admin-1")
    actions = [
        e.action for e in await services.activity.query(ActivityFilter(user_id="admin-1"))
    ]
    assert actions == [Actions.ROLE_REVOKE, Actions.ROLE_ASSIGN, Actions.ROLE_CREATE]
