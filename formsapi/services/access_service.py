from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from formsapi.domain.errors import AlreadyGrantedError, NotFoundError
from formsapi.domain.models import (
    Form,
    FormPermission,
    Permission,
    Role,
    RolePermission,
    User,
    UserPermission,
)
from formsapi.infra.db import get_engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectGrant:
    id: str
    department_id: str
    user_id: str
    permission_id: str
    permission_name: str
    form_id: str | None
    created_at: datetime


class AccessService:
    """Effective access of a user inside one department.

    Effective permissions are the union of the active permissions bundled in
    the user's active role and the user's direct grants, plus the grants bound
    to one form when ``form_id`` is given. Nothing is cached: every call reads
    the current assignments.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_user(self, session: Session, department_id: str, user_id: str) -> User:
        user = session.exec(select(User).where(User.department_id == department_id).where(User.id == user_id)).first()
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _get_scoped_permission(self, session: Session, department_id: str, permission_id: str) -> Permission:
        permission = session.exec(
            select(Permission).where(Permission.department_id == department_id).where(Permission.id == permission_id)
        ).first()
        if permission is None:
            raise NotFoundError("permission not found")
        return permission

    def _ensure_scoped_form(self, session: Session, department_id: str, form_id: str) -> None:
        form = session.exec(select(Form.id).where(Form.department_id == department_id).where(Form.id == form_id)).first()
        if form is None:
            raise NotFoundError("form not found")

    def _active_role(self, session: Session, user: User) -> Role | None:
        if user.role_id is None:
            return None
        role = session.get(Role, user.role_id)
        if role is None or not role.is_active or role.department_id != user.department_id:
            return None
        return role

    def _effective_permissions(
        self,
        session: Session,
        department_id: str,
        user: User,
        form_id: str | None,
    ) -> list[Permission]:
        if not user.is_active:
            return []

        permission_ids: set[str] = set()
        role = self._active_role(session, user)
        if role is not None:
            permission_ids.update(
                session.exec(select(RolePermission.permission_id).where(RolePermission.role_id == role.id)).all()
            )
        permission_ids.update(
            session.exec(
                select(UserPermission.permission_id)
                .where(UserPermission.department_id == department_id)
                .where(UserPermission.user_id == user.id)
            ).all()
        )
        if form_id is not None:
            permission_ids.update(
                session.exec(
                    select(FormPermission.permission_id)
                    .where(FormPermission.department_id == department_id)
                    .where(FormPermission.form_id == form_id)
                    .where(FormPermission.user_id == user.id)
                ).all()
            )
        if not permission_ids:
            return []

        statement = (
            select(Permission)
            .where(Permission.department_id == department_id)
            .where(col(Permission.id).in_(permission_ids))
            .where(col(Permission.is_active).is_(True))
            .order_by(Permission.name)
        )
        return list(session.exec(statement).all())

    def list_effective_permissions(
        self,
        department_id: str,
        user_id: str,
        form_id: str | None = None,
    ) -> list[Permission]:
        with self._session() as session:
            user = self._get_scoped_user(session, department_id, user_id)
            return self._effective_permissions(session, department_id, user, form_id)

    def effective_permission_names(
        self,
        department_id: str,
        user_id: str,
        form_id: str | None = None,
    ) -> list[str]:
        return [item.name for item in self.list_effective_permissions(department_id, user_id, form_id)]

    def has_permission(
        self,
        department_id: str,
        user_id: str,
        permission_name: str,
        form_id: str | None = None,
    ) -> bool:
        with self._session() as session:
            user = session.exec(
                select(User).where(User.department_id == department_id).where(User.id == user_id)
            ).first()
            if user is None:
                return False
            permissions = self._effective_permissions(session, department_id, user, form_id)
            return any(item.name == permission_name for item in permissions)

    def current_role_name(self, department_id: str, user_id: str) -> str | None:
        """Name of the user's role as stored now, ignoring the token's claim."""
        with self._session() as session:
            user = session.exec(
                select(User).where(User.department_id == department_id).where(User.id == user_id)
            ).first()
            if user is None or not user.is_active:
                return None
            role = self._active_role(session, user)
            return role.name if role is not None else None

    def grant_direct(
        self,
        department_id: str,
        user_id: str,
        permission_id: str,
        form_id: str | None = None,
    ) -> DirectGrant:
        with self._session() as session:
            self._get_scoped_user(session, department_id, user_id)
            permission = self._get_scoped_permission(session, department_id, permission_id)
            grant: UserPermission | FormPermission
            if form_id is None:
                existing = session.exec(
                    select(UserPermission.id)
                    .where(UserPermission.user_id == user_id)
                    .where(UserPermission.permission_id == permission_id)
                ).first()
                if existing is not None:
                    raise AlreadyGrantedError("user already has this permission")
                grant = UserPermission(department_id=department_id, user_id=user_id, permission_id=permission_id)
            else:
                self._ensure_scoped_form(session, department_id, form_id)
                existing = session.exec(
                    select(FormPermission.id)
                    .where(FormPermission.form_id == form_id)
                    .where(FormPermission.user_id == user_id)
                    .where(FormPermission.permission_id == permission_id)
                ).first()
                if existing is not None:
                    raise AlreadyGrantedError("user already has this permission for this form")
                grant = FormPermission(
                    department_id=department_id,
                    form_id=form_id,
                    user_id=user_id,
                    permission_id=permission_id,
                )
            session.add(grant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise AlreadyGrantedError("user already has this permission") from exc
            session.refresh(grant)
            logger.info(
                "Granted %s to user %s in department %s%s",
                permission.name,
                user_id,
                department_id,
                f" for form {form_id}" if form_id is not None else "",
            )
            return DirectGrant(
                id=grant.id,
                department_id=department_id,
                user_id=user_id,
                permission_id=permission_id,
                permission_name=permission.name,
                form_id=form_id,
                created_at=grant.created_at,
            )

    def revoke_direct(
        self,
        department_id: str,
        user_id: str,
        permission_id: str,
        form_id: str | None = None,
    ) -> None:
        with self._session() as session:
            grant: UserPermission | FormPermission | None
            if form_id is None:
                grant = session.exec(
                    select(UserPermission)
                    .where(UserPermission.department_id == department_id)
                    .where(UserPermission.user_id == user_id)
                    .where(UserPermission.permission_id == permission_id)
                ).first()
            else:
                grant = session.exec(
                    select(FormPermission)
                    .where(FormPermission.department_id == department_id)
                    .where(FormPermission.form_id == form_id)
                    .where(FormPermission.user_id == user_id)
                    .where(FormPermission.permission_id == permission_id)
                ).first()
            if grant is None:
                raise NotFoundError("permission grant not found")
            session.delete(grant)
            session.commit()

    def list_direct_grants(
        self,
        department_id: str,
        user_id: str | None = None,
        form_id: str | None = None,
    ) -> list[DirectGrant]:
        """Direct grants of the department.

        Without ``form_id`` this lists user-level grants; with it, the grants
        bound to that form. ``user_id`` narrows either listing to one user.
        """
        with self._session() as session:
            if form_id is None:
                user_statement = (
                    select(UserPermission, Permission.name)
                    .join(Permission, col(Permission.id) == col(UserPermission.permission_id))
                    .where(UserPermission.department_id == department_id)
                )
                if user_id is not None:
                    user_statement = user_statement.where(UserPermission.user_id == user_id)
                user_statement = user_statement.order_by(Permission.name)
                return [
                    DirectGrant(
                        id=row.id,
                        department_id=row.department_id,
                        user_id=row.user_id,
                        permission_id=row.permission_id,
                        permission_name=name,
                        form_id=None,
                        created_at=row.created_at,
                    )
                    for row, name in session.exec(user_statement).all()
                ]

            self._ensure_scoped_form(session, department_id, form_id)
            form_statement = (
                select(FormPermission, Permission.name)
                .join(Permission, col(Permission.id) == col(FormPermission.permission_id))
                .where(FormPermission.department_id == department_id)
                .where(FormPermission.form_id == form_id)
            )
            if user_id is not None:
                form_statement = form_statement.where(FormPermission.user_id == user_id)
            form_statement = form_statement.order_by(FormPermission.user_id, Permission.name)
            return [
                DirectGrant(
                    id=row.id,
                    department_id=row.department_id,
                    user_id=row.user_id,
                    permission_id=row.permission_id,
                    permission_name=name,
                    form_id=row.form_id,
                    created_at=row.created_at,
                )
                for row, name in session.exec(form_statement).all()
            ]
