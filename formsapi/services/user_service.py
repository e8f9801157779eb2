from __future__ import annotations

import logging
import os

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from formsapi.domain.errors import AuthError, ConflictError, NotFoundError, ValidationError
from formsapi.domain.models import (
    Department,
    Role,
    SuperAdminCreate,
    User,
    UserCreate,
    UserUpdate,
    now_utc,
)
from formsapi.infra.auth import hash_password, verify_password
from formsapi.infra.db import get_engine, paginate

logger = logging.getLogger(__name__)

SUPER_ADMIN_EMAIL = os.getenv("SUPER_ADMIN_EMAIL", "superadmin@example.com")
SUPER_ADMIN_PASSWORD = os.getenv("SUPER_ADMIN_PASSWORD", "")
SUPER_ADMIN_NAME = os.getenv("SUPER_ADMIN_NAME", "Super Admin")


class UserService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_user(self, session: Session, department_id: str, user_id: str) -> User:
        user = session.exec(select(User).where(User.department_id == department_id).where(User.id == user_id)).first()
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _email_taken(self, session: Session, email: str, *, exclude_id: str | None = None) -> bool:
        statement = select(User.id).where(User.email == email)
        if exclude_id is not None:
            statement = statement.where(User.id != exclude_id)
        return session.exec(statement).first() is not None

    def _check_role(self, session: Session, department_id: str, role_id: str) -> None:
        role = session.exec(select(Role.id).where(Role.department_id == department_id).where(Role.id == role_id)).first()
        if role is None:
            raise ValidationError("role does not belong to department")

    def create_user(self, department_id: str, payload: UserCreate) -> User:
        with self._session() as session:
            if session.get(Department, department_id) is None:
                raise NotFoundError("department not found")
            email = str(payload.email).lower()
            if self._email_taken(session, email):
                raise ConflictError("email already registered")
            if payload.role_id is not None:
                self._check_role(session, department_id, payload.role_id)
            user = User(
                department_id=department_id,
                email=email,
                password_hash=hash_password(payload.password),
                name=payload.name,
                role_id=payload.role_id,
                profile=payload.profile,
                custom_permissions=payload.custom_permissions,
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.refresh(user)
            return user

    def list_users(
        self,
        department_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
        search: str | None = None,
    ) -> tuple[list[User], int]:
        with self._session() as session:
            statement = select(User).where(User.department_id == department_id)
            if search:
                pattern = f"%{search.lower()}%"
                statement = statement.where(
                    sa.or_(
                        sa.func.lower(col(User.email)).like(pattern),
                        sa.func.lower(col(User.name)).like(pattern),
                    )
                )
            statement = statement.order_by(User.email)
            return paginate(session, statement, page=page, page_size=page_size)

    def get_user(self, department_id: str, user_id: str) -> User:
        with self._session() as session:
            return self._get_scoped_user(session, department_id, user_id)

    def update_user(self, department_id: str, user_id: str, payload: UserUpdate) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, department_id, user_id)
            if payload.email is not None:
                email = str(payload.email).lower()
                if email != user.email and self._email_taken(session, email, exclude_id=user_id):
                    raise ConflictError("email already registered")
                user.email = email
            if payload.password is not None:
                user.password_hash = hash_password(payload.password)
            if "name" in payload.model_fields_set:
                user.name = payload.name
            if payload.profile is not None:
                user.profile = payload.profile
            if payload.custom_permissions is not None:
                user.custom_permissions = payload.custom_permissions
            if payload.is_active is not None:
                user.is_active = payload.is_active
            user.updated_at = now_utc()
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.refresh(user)
            return user

    def delete_user(self, department_id: str, user_id: str) -> None:
        with self._session() as session:
            user = self._get_scoped_user(session, department_id, user_id)
            session.delete(user)
            session.commit()

    def toggle_user_status(self, department_id: str, user_id: str) -> User:
        with self._session() as session:
            user = self._get_scoped_user(session, department_id, user_id)
            user.is_active = not user.is_active
            user.updated_at = now_utc()
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def set_user_role(self, department_id: str, user_id: str, role_id: str | None) -> User:
        """Assign ``role_id`` to the user, or clear the assignment with ``None``."""
        with self._session() as session:
            user = self._get_scoped_user(session, department_id, user_id)
            if role_id is not None:
                self._check_role(session, department_id, role_id)
            user.role_id = role_id
            user.updated_at = now_utc()
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def role_name_of(self, user: User) -> str | None:
        if user.role_id is None:
            return None
        with self._session() as session:
            role = session.get(Role, user.role_id)
            return role.name if role is not None else None

    def authenticate(self, email: str, password: str) -> User:
        with self._session() as session:
            user = session.exec(select(User).where(User.email == email.lower())).first()
            if user is None or not verify_password(password, user.password_hash):
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if not user.is_super_admin and user.department_id is None:
                raise AuthError("user has no department")
            user.last_login_at = now_utc()
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            if not verify_password(current_password, user.password_hash):
                raise AuthError("current password is incorrect")
            user.password_hash = hash_password(new_password)
            user.updated_at = now_utc()
            session.add(user)
            session.commit()

    def list_super_admins(self) -> list[User]:
        with self._session() as session:
            statement = select(User).where(col(User.is_super_admin).is_(True)).order_by(User.email)
            return list(session.exec(statement).all())

    def create_super_admin(self, payload: SuperAdminCreate) -> User:
        with self._session() as session:
            email = str(payload.email).lower()
            if self._email_taken(session, email):
                raise ConflictError("email already registered")
            user = User(
                department_id=None,
                email=email,
                password_hash=hash_password(payload.password),
                name=payload.name,
                is_super_admin=True,
                is_active=True,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("email already registered") from exc
            session.refresh(user)
            logger.info("Created super admin %s", user.email)
            return user

    def delete_super_admin(self, user_id: str) -> None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None or not user.is_super_admin:
                raise NotFoundError("super admin not found")
            remaining = session.execute(
                sa.select(sa.func.count())
                .select_from(User)
                .where(col(User.is_super_admin).is_(True))
                .where(col(User.is_active).is_(True))
                .where(User.id != user_id)
            ).scalar_one()
            if int(remaining) == 0:
                raise ConflictError("cannot delete the last active super admin")
            session.delete(user)
            session.commit()

    def bootstrap_super_admin(
        self,
        email: str | None = None,
        password: str | None = None,
        name: str | None = None,
    ) -> User | None:
        """Make sure the configured super admin exists.

        Returns ``None`` when no password is configured. Running it again, or
        from several workers at once, leaves exactly one account.
        """
        email = (email or SUPER_ADMIN_EMAIL).lower()
        password = password if password is not None else SUPER_ADMIN_PASSWORD
        if not password:
            logger.info("Super admin bootstrap skipped: no password configured")
            return None
        with self._session() as session:
            existing = session.exec(select(User).where(User.email == email)).first()
            if existing is not None:
                return existing
            user = User(
                department_id=None,
                email=email,
                password_hash=hash_password(password),
                name=name or SUPER_ADMIN_NAME,
                is_super_admin=True,
                is_active=True,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.exec(select(User).where(User.email == email)).first()
                if existing is None:
                    raise
                return existing
            session.refresh(user)
            logger.info("Bootstrapped super admin %s", email)
            return user
