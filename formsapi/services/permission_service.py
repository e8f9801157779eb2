from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from formsapi.domain.errors import ConflictError, NotFoundError
from formsapi.domain.models import (
    Department,
    FormPermission,
    Permission,
    PermissionCreate,
    PermissionUpdate,
    RolePermission,
    UserPermission,
)
from formsapi.domain.permissions import split_permission_name
from formsapi.infra.db import get_engine, paginate


class PermissionService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_permission(self, session: Session, department_id: str, permission_id: str) -> Permission:
        permission = session.exec(
            select(Permission).where(Permission.department_id == department_id).where(Permission.id == permission_id)
        ).first()
        if permission is None:
            raise NotFoundError("permission not found")
        return permission

    def _name_taken(
        self,
        session: Session,
        department_id: str,
        name: str,
        *,
        exclude_id: str | None = None,
    ) -> bool:
        statement = select(Permission.id).where(Permission.department_id == department_id).where(Permission.name == name)
        if exclude_id is not None:
            statement = statement.where(Permission.id != exclude_id)
        return session.exec(statement).first() is not None

    def _is_referenced(self, session: Session, permission_id: str) -> bool:
        for model in (RolePermission, UserPermission, FormPermission):
            statement = select(model.permission_id).where(model.permission_id == permission_id)
            if session.exec(statement).first() is not None:
                return True
        return False

    def create_permission(self, department_id: str, payload: PermissionCreate) -> Permission:
        with self._session() as session:
            if session.get(Department, department_id) is None:
                raise NotFoundError("department not found")
            if self._name_taken(session, department_id, payload.name):
                raise ConflictError("permission name already exists in department")
            default_resource, default_action = split_permission_name(payload.name)
            permission = Permission(
                department_id=department_id,
                name=payload.name,
                display_name=payload.display_name,
                description=payload.description,
                resource=payload.resource if payload.resource is not None else default_resource,
                action=payload.action if payload.action is not None else default_action,
                is_active=payload.is_active,
            )
            session.add(permission)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("permission name already exists in department") from exc
            session.refresh(permission)
            return permission

    def list_permissions(
        self,
        department_id: str,
        *,
        page: int = 1,
        page_size: int = 50,
        resource: str | None = None,
    ) -> tuple[list[Permission], int]:
        with self._session() as session:
            statement = select(Permission).where(Permission.department_id == department_id)
            if resource is not None:
                statement = statement.where(Permission.resource == resource)
            statement = statement.order_by(Permission.resource, Permission.name)
            return paginate(session, statement, page=page, page_size=page_size)

    def get_permission(self, department_id: str, permission_id: str) -> Permission:
        with self._session() as session:
            return self._get_scoped_permission(session, department_id, permission_id)

    def update_permission(self, department_id: str, permission_id: str, payload: PermissionUpdate) -> Permission:
        with self._session() as session:
            permission = self._get_scoped_permission(session, department_id, permission_id)
            if payload.name is not None and payload.name != permission.name:
                if self._name_taken(session, department_id, payload.name, exclude_id=permission_id):
                    raise ConflictError("permission name already exists in department")
                permission.name = payload.name
            for field_name in ("display_name", "description", "resource", "action"):
                if field_name in payload.model_fields_set:
                    setattr(permission, field_name, getattr(payload, field_name))
            if payload.is_active is not None:
                permission.is_active = payload.is_active
            session.add(permission)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("permission name already exists in department") from exc
            session.refresh(permission)
            return permission

    def delete_permission(self, department_id: str, permission_id: str) -> None:
        with self._session() as session:
            permission = self._get_scoped_permission(session, department_id, permission_id)
            if self._is_referenced(session, permission_id):
                raise ConflictError("permission is assigned to roles or users; deactivate it instead")
            session.delete(permission)
            session.commit()
