from __future__ import annotations

import uuid

import pytest
from fastapi import HTTPException

from crm_api.authz.context import ActorUser
from crm_api.authz.policy import can_modify_record, ensure_can_modify, ensure_role, has_role_access
from crm_api.crm.enums import Role


@pytest.mark.parametrize(
    ("role", "required", "expected"),
    [
        (Role.USER, [], True),
        (Role.USER, [Role.USER], True),
        (Role.USER, [Role.MANAGER], False),
        (Role.USER, [Role.ADMIN], False),
        (Role.MANAGER, [Role.USER], True),
        (Role.MANAGER, [Role.MANAGER], True),
        (Role.MANAGER, [Role.ADMIN], False),
        (Role.ADMIN, [Role.MANAGER], True),
        (Role.ADMIN, [Role.USER], True),
        ("manager", ["admin", "manager"], True),
    ],
)
def test_has_role_access(role: Role | str, required: list[Role | str], expected: bool) -> None:
    assert has_role_access(role, required) is expected


def test_can_modify_record_for_owner_and_elevated_roles() -> None:
    owner_id = uuid.uuid4()
    owner = ActorUser(user_id=owner_id)
    stranger = ActorUser(user_id=uuid.uuid4())
    manager = ActorUser(user_id=uuid.uuid4(), role=Role.MANAGER)
    admin = ActorUser(user_id=uuid.uuid4(), role=Role.ADMIN)

    assert can_modify_record(owner, owner_id)
    assert not can_modify_record(stranger, owner_id)
    assert can_modify_record(manager, owner_id)
    assert can_modify_record(admin, None)


def test_actor_role_flags() -> None:
    user = ActorUser(user_id=uuid.uuid4())
    manager = ActorUser(user_id=uuid.uuid4(), role=Role.MANAGER)
    admin = ActorUser(user_id=uuid.uuid4(), role=Role.ADMIN)

    assert (user.is_admin, user.is_manager) == (False, False)
    assert (manager.is_admin, manager.is_manager) == (False, True)
    assert (admin.is_admin, admin.is_manager) == (True, False)


def test_can_modify_record_matches_any_owner_column() -> None:
    assignee_id = uuid.uuid4()
    actor = ActorUser(user_id=assignee_id)

    assert can_modify_record(actor, uuid.uuid4(), assignee_id)
    assert not can_modify_record(actor, None, None)


def test_ensure_role_raises_forbidden_with_redirect() -> None:
    actor = ActorUser(user_id=uuid.uuid4())

    with pytest.raises(HTTPException) as exc_info:
        ensure_role(actor, Role.MANAGER)

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail["redirect_to"] == "/unauthorized"


def test_ensure_can_modify_names_the_resource() -> None:
    actor = ActorUser(user_id=uuid.uuid4())

    with pytest.raises(HTTPException) as exc_info:
        ensure_can_modify(actor, "deal", uuid.uuid4())

    assert exc_info.value.status_code == 403
    assert exc_info.value.detail == "not allowed to modify deal"
