from __future__ import annotations

import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from formsapi.domain.errors import ConflictError, NotFoundError
from formsapi.domain.models import (
    Department,
    DepartmentCreate,
    DepartmentUpdate,
    Form,
    Permission,
    Role,
    RolePermission,
    User,
    now_utc,
)
from formsapi.domain.permissions import (
    DEFAULT_PERMISSION_NAMES,
    DEPARTMENT_ADMIN_ROLE,
    split_permission_name,
)
from formsapi.infra.db import get_engine, paginate

logger = logging.getLogger(__name__)


class DepartmentService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _seed_defaults(self, session: Session, department: Department) -> None:
        admin_role = Role(
            department_id=department.id,
            name=DEPARTMENT_ADMIN_ROLE,
            display_name="Department administrator",
            description="seeded system role holding every default permission",
            is_system_role=True,
        )
        session.add(admin_role)
        permissions: list[Permission] = []
        for name in DEFAULT_PERMISSION_NAMES:
            resource, action = split_permission_name(name)
            permission = Permission(
                department_id=department.id,
                name=name,
                description=f"default permission {name}",
                resource=resource,
                action=action,
            )
            session.add(permission)
            permissions.append(permission)
        session.flush()

        for position, permission in enumerate(permissions):
            session.add(
                RolePermission(
                    role_id=admin_role.id,
                    permission_id=permission.id,
                    position=position,
                )
            )

    def create_department(self, payload: DepartmentCreate) -> Department:
        with self._session() as session:
            if payload.code is not None and self._code_taken(session, payload.code):
                raise ConflictError("department code already exists")
            department = Department(
                name=payload.name,
                description=payload.description,
                code=payload.code,
                settings=payload.settings,
            )
            session.add(department)
            try:
                session.flush()
                self._seed_defaults(session, department)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("department code already exists") from exc
            session.refresh(department)
            logger.info("Created department %s (%s)", department.id, department.name)
            return department

    def _code_taken(self, session: Session, code: str, *, exclude_id: str | None = None) -> bool:
        statement = select(Department.id).where(Department.code == code)
        if exclude_id is not None:
            statement = statement.where(Department.id != exclude_id)
        return session.exec(statement).first() is not None

    def list_departments(
        self,
        *,
        page: int = 1,
        page_size: int = 20,
        department_id: str | None = None,
    ) -> tuple[list[Department], int]:
        with self._session() as session:
            statement = select(Department).order_by(Department.name)
            if department_id is not None:
                statement = statement.where(Department.id == department_id)
            return paginate(session, statement, page=page, page_size=page_size)

    def get_department(self, department_id: str) -> Department:
        with self._session() as session:
            department = session.get(Department, department_id)
            if department is None:
                raise NotFoundError("department not found")
            return department

    def count_members(self, department_id: str) -> dict[str, int]:
        with self._session() as session:
            user_count = session.execute(
                sa.select(sa.func.count()).select_from(User).where(User.department_id == department_id)
            ).scalar_one()
            form_count = session.execute(
                sa.select(sa.func.count()).select_from(Form).where(Form.department_id == department_id)
            ).scalar_one()
            return {"user_count": int(user_count), "form_count": int(form_count)}

    def update_department(self, department_id: str, payload: DepartmentUpdate) -> Department:
        with self._session() as session:
            department = session.get(Department, department_id)
            if department is None:
                raise NotFoundError("department not found")
            if payload.name is not None:
                department.name = payload.name
            if "description" in payload.model_fields_set:
                department.description = payload.description
            if "code" in payload.model_fields_set:
                if payload.code is not None and self._code_taken(session, payload.code, exclude_id=department_id):
                    raise ConflictError("department code already exists")
                department.code = payload.code
            if payload.settings is not None:
                department.settings = payload.settings
            department.updated_at = now_utc()
            session.add(department)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("department code already exists") from exc
            session.refresh(department)
            return department

    def delete_department(self, department_id: str) -> None:
        with self._session() as session:
            department = session.get(Department, department_id)
            if department is None:
                raise NotFoundError("department not found")
            session.delete(department)
            session.commit()
            logger.info("Deleted department %s", department_id)

    def exists_by_code(self, code: str) -> bool:
        with self._session() as session:
            return self._code_taken(session, code)
