from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, select

from formsapi.domain.errors import AlreadyGrantedError, ConflictError, NotFoundError, ValidationError
from formsapi.domain.models import (
    DepartmentCreate,
    FormCreate,
    PermissionCreate,
    PermissionUpdate,
    Role,
    RoleCreate,
    User,
    UserCreate,
    UserPermission,
)
from formsapi.domain.permissions import DEFAULT_PERMISSION_NAMES, DEPARTMENT_ADMIN_ROLE
from formsapi.infra import db
from formsapi.services.access_service import AccessService
from formsapi.services.department_service import DepartmentService
from formsapi.services.form_service import FormService
from formsapi.services.permission_service import PermissionService
from formsapi.services.role_service import RoleService
from formsapi.services.user_service import UserService


@pytest.fixture()
def access_engine(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[Engine, None, None]:
    db_path = tmp_path / "access_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    yield test_engine
    test_engine.dispose()


def _department(name: str) -> str:
    return DepartmentService().create_department(DepartmentCreate(name=name)).id


def _permission(department_id: str, name: str) -> str:
    return PermissionService().create_permission(department_id, PermissionCreate(name=name)).id


def _user(department_id: str, email: str, role_id: str | None = None) -> str:
    payload = UserCreate(email=email, password="secret-pass", role_id=role_id)
    return UserService().create_user(department_id, payload).id


def _editor_scenario() -> tuple[str, str, str, str, str]:
    department_id = _department("scope-s")
    edit_form = _permission(department_id, "edit_form")
    delete_form = _permission(department_id, "delete_form")
    editor = RoleService().create_role(department_id, RoleCreate(name="Editor", permission_ids=[edit_form]))
    user_id = _user(department_id, "u@example.com", role_id=editor.id)
    return department_id, user_id, editor.id, edit_form, delete_form


def test_effective_permissions_union_role_and_direct_grants(access_engine: Engine) -> None:
    department_id, user_id, _, _, delete_form = _editor_scenario()
    access = AccessService()
    access.grant_direct(department_id, user_id, delete_form)

    assert access.effective_permission_names(department_id, user_id) == ["delete_form", "edit_form"]
    assert access.has_permission(department_id, user_id, "edit_form")
    assert access.has_permission(department_id, user_id, "delete_form")
    assert not access.has_permission(department_id, user_id, "forms.read")


def test_clearing_role_keeps_only_direct_grants(access_engine: Engine) -> None:
    department_id, user_id, _, _, delete_form = _editor_scenario()
    access = AccessService()
    access.grant_direct(department_id, user_id, delete_form)

    UserService().set_user_role(department_id, user_id, None)

    assert access.effective_permission_names(department_id, user_id) == ["delete_form"]
    assert access.current_role_name(department_id, user_id) is None


def test_duplicate_direct_grant_is_rejected(access_engine: Engine) -> None:
    department_id, user_id, _, edit_form, delete_form = _editor_scenario()
    access = AccessService()
    access.grant_direct(department_id, user_id, delete_form)

    with pytest.raises(AlreadyGrantedError):
        access.grant_direct(department_id, user_id, delete_form)

    # Granted both through the role and directly, still listed once.
    access.grant_direct(department_id, user_id, edit_form)
    names = access.effective_permission_names(department_id, user_id)
    assert names.count("edit_form") == 1
    assert names.count("delete_form") == 1


def test_storage_constraint_rejects_duplicate_grant_rows(access_engine: Engine) -> None:
    department_id, user_id, _, _, delete_form = _editor_scenario()
    with Session(access_engine) as session:
        session.add(UserPermission(department_id=department_id, user_id=user_id, permission_id=delete_form))
        session.commit()
        session.add(UserPermission(department_id=department_id, user_id=user_id, permission_id=delete_form))
        with pytest.raises(IntegrityError):
            session.commit()


def test_revoke_absent_grant_is_not_found(access_engine: Engine) -> None:
    department_id, user_id, _, edit_form, delete_form = _editor_scenario()
    access = AccessService()
    access.grant_direct(department_id, user_id, delete_form)

    with pytest.raises(NotFoundError):
        access.revoke_direct(department_id, user_id, edit_form)

    assert [item.permission_name for item in access.list_direct_grants(department_id, user_id)] == ["delete_form"]

    access.revoke_direct(department_id, user_id, delete_form)
    assert access.effective_permission_names(department_id, user_id) == ["edit_form"]


def test_assign_permissions_replaces_role_set_in_given_order(access_engine: Engine) -> None:
    department_id, user_id, editor_id, edit_form, delete_form = _editor_scenario()
    publish_form = _permission(department_id, "publish_form")
    roles = RoleService()

    assigned = roles.assign_permissions_to_role(department_id, editor_id, [publish_form, delete_form, publish_form])

    assert [item.name for item in assigned] == ["publish_form", "delete_form"]
    assert [item.name for item in roles.list_role_permissions(department_id, editor_id)] == [
        "publish_form",
        "delete_form",
    ]
    assert AccessService().effective_permission_names(department_id, user_id) == ["delete_form", "publish_form"]
    assert edit_form not in {item.id for item in assigned}


def test_assign_unknown_permission_ids_changes_nothing(access_engine: Engine) -> None:
    department_id, _, editor_id, edit_form, delete_form = _editor_scenario()
    other_department = _department("scope-t")
    foreign = _permission(other_department, "edit_form")
    roles = RoleService()

    with pytest.raises(ValidationError):
        roles.assign_permissions_to_role(department_id, editor_id, [delete_form, "missing-id"])
    with pytest.raises(ValidationError):
        roles.assign_permissions_to_role(department_id, editor_id, [foreign])

    assert [item.id for item in roles.list_role_permissions(department_id, editor_id)] == [edit_form]


def test_assign_permissions_to_missing_role_is_not_found(access_engine: Engine) -> None:
    department_id = _department("scope-s")
    with pytest.raises(NotFoundError):
        RoleService().assign_permissions_to_role(department_id, "missing-role", [])


def test_permission_names_are_unique_per_department_only(access_engine: Engine) -> None:
    first = _department("first")
    second = _department("second")
    _permission(first, "approve_form")
    _permission(second, "approve_form")

    with pytest.raises(ConflictError):
        _permission(first, "approve_form")


def test_new_department_is_seeded_with_admin_role(access_engine: Engine) -> None:
    department_id = _department("seeded")
    roles, total = RoleService().list_roles(department_id)
    assert total == 1
    admin = roles[0]
    assert admin.name == DEPARTMENT_ADMIN_ROLE
    assert admin.is_system_role
    names = [item.name for item in RoleService().list_role_permissions(department_id, admin.id)]
    assert names == DEFAULT_PERMISSION_NAMES

    with pytest.raises(ConflictError):
        RoleService().delete_role(department_id, admin.id)


def test_deleting_role_detaches_its_users(access_engine: Engine) -> None:
    department_id, user_id, editor_id, _, _ = _editor_scenario()

    RoleService().delete_role(department_id, editor_id)

    with Session(access_engine) as session:
        user = session.get(User, user_id)
        assert user is not None
        assert user.role_id is None
        assert session.get(Role, editor_id) is None
    assert AccessService().effective_permission_names(department_id, user_id) == []


def test_inactive_role_user_and_permission_grant_nothing(access_engine: Engine) -> None:
    department_id, user_id, editor_id, _, delete_form = _editor_scenario()
    access = AccessService()
    access.grant_direct(department_id, user_id, delete_form)

    PermissionService().update_permission(department_id, delete_form, PermissionUpdate(is_active=False))
    assert access.effective_permission_names(department_id, user_id) == ["edit_form"]

    with Session(access_engine) as session:
        role = session.get(Role, editor_id)
        assert role is not None
        role.is_active = False
        session.add(role)
        session.commit()
    assert access.effective_permission_names(department_id, user_id) == []

    UserService().toggle_user_status(department_id, user_id)
    assert access.list_effective_permissions(department_id, user_id) == []


def test_form_scoped_grant_applies_only_to_that_form(access_engine: Engine) -> None:
    department_id, user_id, _, _, delete_form = _editor_scenario()
    forms = FormService()
    form_a = forms.create_form(department_id, FormCreate(name="a"))
    form_b = forms.create_form(department_id, FormCreate(name="b"))
    access = AccessService()

    grant = access.grant_direct(department_id, user_id, delete_form, form_id=form_a.id)
    assert grant.form_id == form_a.id

    assert access.has_permission(department_id, user_id, "delete_form", form_id=form_a.id)
    assert not access.has_permission(department_id, user_id, "delete_form", form_id=form_b.id)
    assert not access.has_permission(department_id, user_id, "delete_form")

    with pytest.raises(AlreadyGrantedError):
        access.grant_direct(department_id, user_id, delete_form, form_id=form_a.id)

    access.revoke_direct(department_id, user_id, delete_form, form_id=form_a.id)
    assert not access.has_permission(department_id, user_id, "delete_form", form_id=form_a.id)


def test_referenced_permission_cannot_be_deleted(access_engine: Engine) -> None:
    department_id, _, _, edit_form, delete_form = _editor_scenario()
    permissions = PermissionService()

    with pytest.raises(ConflictError):
        permissions.delete_permission(department_id, edit_form)

    permissions.delete_permission(department_id, delete_form)
    with pytest.raises(NotFoundError):
        permissions.get_permission(department_id, delete_form)


def test_grant_for_user_of_other_department_is_not_found(access_engine: Engine) -> None:
    department_id, _, _, edit_form, _ = _editor_scenario()
    other_department = _department("other")
    outsider = _user(other_department, "outsider@example.com")

    with pytest.raises(NotFoundError):
        AccessService().grant_direct(department_id, outsider, edit_form)

    with Session(access_engine) as session:
        assert session.exec(select(UserPermission)).all() == []


def test_created_roles_are_never_system_roles(access_engine: Engine) -> None:
    department_id = _department("custom")
    roles = RoleService()
    payload = RoleCreate.model_validate({"name": "Auditor", "is_system_role": True})

    role = roles.create_role(department_id, payload)

    assert role.is_system_role is False
    roles.delete_role(department_id, role.id)
    with pytest.raises(NotFoundError):
        roles.get_role(department_id, role.id)
