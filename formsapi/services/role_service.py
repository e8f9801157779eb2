from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from formsapi.domain.errors import ConflictError, NotFoundError, ValidationError
from formsapi.domain.models import (
    Department,
    Permission,
    Role,
    RoleCreate,
    RolePermission,
    RoleUpdate,
    User,
    now_utc,
)
from formsapi.infra.db import get_engine, paginate

logger = logging.getLogger(__name__)


class RoleService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_role(self, session: Session, department_id: str, role_id: str) -> Role:
        role = session.exec(select(Role).where(Role.department_id == department_id).where(Role.id == role_id)).first()
        if role is None:
            raise NotFoundError("role not found")
        return role

    def _resolve_permission_ids(
        self,
        session: Session,
        department_id: str,
        permission_ids: list[str],
    ) -> list[str]:
        ordered: list[str] = []
        for item in permission_ids:
            if item not in ordered:
                ordered.append(item)
        if not ordered:
            return []
        known = set(
            session.exec(
                select(Permission.id)
                .where(Permission.department_id == department_id)
                .where(col(Permission.id).in_(ordered))
            ).all()
        )
        missing = [item for item in ordered if item not in known]
        if missing:
            raise ValidationError(f"unknown permission ids for department: {', '.join(missing)}")
        return ordered

    def _replace_role_permissions(self, session: Session, role_id: str, permission_ids: list[str]) -> None:
        session.execute(sa.delete(RolePermission).where(col(RolePermission.role_id) == role_id))
        for position, permission_id in enumerate(permission_ids):
            session.add(RolePermission(role_id=role_id, permission_id=permission_id, position=position))

    def _ordered_permissions(self, session: Session, role_id: str) -> list[Permission]:
        statement = (
            select(Permission)
            .join(RolePermission, col(RolePermission.permission_id) == col(Permission.id))
            .where(RolePermission.role_id == role_id)
            .order_by(col(RolePermission.position))
        )
        return list(session.exec(statement).all())

    def create_role(self, department_id: str, payload: RoleCreate) -> Role:
        with self._session() as session:
            if session.get(Department, department_id) is None:
                raise NotFoundError("department not found")
            permission_ids = self._resolve_permission_ids(session, department_id, payload.permission_ids)
            role = Role(
                department_id=department_id,
                name=payload.name,
                display_name=payload.display_name,
                description=payload.description,
                is_active=payload.is_active,
            )
            session.add(role)
            try:
                session.flush()
                self._replace_role_permissions(session, role.id, permission_ids)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in department") from exc
            session.refresh(role)
            return role

    def list_roles(
        self,
        department_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Role], int]:
        with self._session() as session:
            statement = select(Role).where(Role.department_id == department_id).order_by(Role.name)
            return paginate(session, statement, page=page, page_size=page_size)

    def get_role(self, department_id: str, role_id: str) -> Role:
        with self._session() as session:
            return self._get_scoped_role(session, department_id, role_id)

    def list_role_permissions(self, department_id: str, role_id: str) -> list[Permission]:
        with self._session() as session:
            role = self._get_scoped_role(session, department_id, role_id)
            return self._ordered_permissions(session, role.id)

    def update_role(self, department_id: str, role_id: str, payload: RoleUpdate) -> Role:
        with self._session() as session:
            role = self._get_scoped_role(session, department_id, role_id)
            if payload.name is not None and payload.name != role.name:
                if role.is_system_role:
                    raise ConflictError("system role cannot be renamed")
                role.name = payload.name
            if "display_name" in payload.model_fields_set:
                role.display_name = payload.display_name
            if "description" in payload.model_fields_set:
                role.description = payload.description
            if payload.is_active is not None:
                role.is_active = payload.is_active
            if payload.permission_ids is not None:
                permission_ids = self._resolve_permission_ids(session, department_id, payload.permission_ids)
                self._replace_role_permissions(session, role.id, permission_ids)
            role.updated_at = now_utc()
            session.add(role)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role name already exists in department") from exc
            session.refresh(role)
            return role

    def delete_role(self, department_id: str, role_id: str) -> None:
        with self._session() as session:
            role = self._get_scoped_role(session, department_id, role_id)
            if role.is_system_role:
                raise ConflictError("system role cannot be deleted")
            session.execute(
                sa.update(User)
                .where(col(User.role_id) == role_id)
                .values(role_id=None, updated_at=now_utc())
            )
            session.delete(role)
            session.commit()

    def assign_permissions_to_role(
        self,
        department_id: str,
        role_id: str,
        permission_ids: list[str],
    ) -> list[Permission]:
        """Replace the role's whole permission set with ``permission_ids``.

        The list order is kept as the role's permission order and duplicates
        collapse to their first occurrence. Ids that are not permissions of the
        role's department reject the whole call before anything is written.
        """
        with self._session() as session:
            role = self._get_scoped_role(session, department_id, role_id)
            ordered_ids = self._resolve_permission_ids(session, department_id, permission_ids)
            try:
                self._replace_role_permissions(session, role.id, ordered_ids)
                role.updated_at = now_utc()
                session.add(role)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("role permission assignment conflicted with a concurrent change") from exc
            logger.info("Assigned %d permission(s) to role %s", len(ordered_ids), role_id)
            return self._ordered_permissions(session, role.id)
