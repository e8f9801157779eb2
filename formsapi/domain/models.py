from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, ForeignKeyConstraint, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

T = TypeVar("T")


def now_utc() -> datetime:
    return datetime.now(UTC)


class Department(SQLModel, table=True):
    __tablename__ = "departments"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    description: str | None = None
    code: str | None = Field(default=None, index=True, unique=True)
    settings: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime | None = None


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"
    __table_args__ = (
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Role(SQLModel, table=True):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("department_id", "name", name="uq_roles_department_name"),
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    name: str = Field(index=True)
    display_name: str | None = None
    description: str | None = None
    is_system_role: bool = Field(default=False)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime | None = None


class Permission(SQLModel, table=True):
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("department_id", "name", name="uq_permissions_department_name"),
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    name: str = Field(index=True)
    display_name: str | None = None
    description: str | None = None
    resource: str | None = Field(default=None, index=True)
    action: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="SET NULL"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str | None = Field(default=None, index=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    name: str | None = None
    role_id: str | None = Field(default=None, index=True)
    profile: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    custom_permissions: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    is_super_admin: bool = Field(default=False, index=True)
    is_active: bool = Field(default=True)
    email_verified_at: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime | None = None


class RolePermission(SQLModel, table=True):
    __tablename__ = "role_permissions"
    __table_args__ = (
        ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
    )

    role_id: str = Field(primary_key=True)
    permission_id: str = Field(primary_key=True)
    position: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class UserPermission(SQLModel, table=True):
    __tablename__ = "user_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", name="uq_user_permissions_user_permission"),
        ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    user_id: str = Field(index=True)
    permission_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Form(SQLModel, table=True):
    __tablename__ = "forms"
    __table_args__ = (
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        Index("ix_forms_department_status", "department_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    name: str = Field(index=True)
    code: str | None = Field(default=None, index=True)
    title: str | None = None
    description: str | None = None
    form_schema: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    settings: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    status: str | None = None
    is_active: bool = Field(default=True)
    version: int = Field(default=1)
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime | None = None


class FormSchemaVersion(SQLModel, table=True):
    __tablename__ = "form_schema_versions"
    __table_args__ = (
        UniqueConstraint("form_id", "version_number", name="uq_form_schema_versions_form_version"),
        ForeignKeyConstraint(["form_id"], ["forms.id"], ondelete="CASCADE"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    form_id: str = Field(index=True)
    version_number: int
    schema_data: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
    )
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class FormPermission(SQLModel, table=True):
    __tablename__ = "form_permissions"
    __table_args__ = (
        UniqueConstraint(
            "form_id",
            "user_id",
            "permission_id",
            name="uq_form_permissions_form_user_permission",
        ),
        ForeignKeyConstraint(["form_id"], ["forms.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
        Index("ix_form_permissions_form_user", "form_id", "user_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    form_id: str
    user_id: str = Field(index=True)
    permission_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class FormSubmission(SQLModel, table=True):
    __tablename__ = "form_submissions"
    __table_args__ = (
        ForeignKeyConstraint(["form_id"], ["forms.id"], ondelete="CASCADE"),
        ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    form_id: str = Field(index=True)
    user_id: str | None = Field(default=None, index=True)
    submission_data: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    ip_address: str | None = None
    user_agent: str | None = None
    submitted_at: datetime = Field(default_factory=now_utc, index=True)


class WebhookEndpoint(SQLModel, table=True):
    __tablename__ = "webhook_endpoints"
    __table_args__ = (
        ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="CASCADE"),
        Index("ix_webhook_endpoints_department_active", "department_id", "is_active"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    department_id: str = Field(index=True)
    url: str
    method: str = Field(default="POST")
    headers: str | None = None
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime | None = None


class ApiResponse(BaseModel, Generic[T]):
    success: bool
    message: str
    data: T | None = None
    errors: dict[str, list[str]] | None = None


class Page(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class DepartmentCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=200)
    description: str | None = PydanticField(default=None, max_length=1000)
    code: str | None = PydanticField(default=None, max_length=50)
    settings: dict[str, Any] = PydanticField(default_factory=dict)


class DepartmentUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    description: str | None = PydanticField(default=None, max_length=1000)
    code: str | None = PydanticField(default=None, max_length=50)
    settings: dict[str, Any] | None = None


class DepartmentRead(ORMReadModel):
    id: str
    name: str
    description: str | None = None
    code: str | None = None
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime | None = None


class DepartmentSummaryRead(DepartmentRead):
    user_count: int = 0
    form_count: int = 0


class PermissionCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)
    display_name: str | None = PydanticField(default=None, max_length=200)
    description: str | None = PydanticField(default=None, max_length=1000)
    resource: str | None = PydanticField(default=None, max_length=100)
    action: str | None = PydanticField(default=None, max_length=100)
    is_active: bool = True


class PermissionUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=100)
    display_name: str | None = PydanticField(default=None, max_length=200)
    description: str | None = PydanticField(default=None, max_length=1000)
    resource: str | None = PydanticField(default=None, max_length=100)
    action: str | None = PydanticField(default=None, max_length=100)
    is_active: bool | None = None


class PermissionRead(ORMReadModel):
    id: str
    department_id: str
    name: str
    display_name: str | None = None
    description: str | None = None
    resource: str | None = None
    action: str | None = None
    is_active: bool
    created_at: datetime


class RoleCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=100)
    display_name: str | None = PydanticField(default=None, max_length=200)
    description: str | None = PydanticField(default=None, max_length=1000)
    is_active: bool = True
    permission_ids: list[str] = PydanticField(default_factory=list)


class RoleUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=100)
    display_name: str | None = PydanticField(default=None, max_length=200)
    description: str | None = PydanticField(default=None, max_length=1000)
    is_active: bool | None = None
    permission_ids: list[str] | None = None


class RoleRead(ORMReadModel):
    id: str
    department_id: str
    name: str
    display_name: str | None = None
    description: str | None = None
    is_system_role: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime | None = None
    permissions: list[PermissionRead] = PydanticField(default_factory=list)


class RolePermissionsAssign(BaseModel):
    permission_ids: list[str]


class UserCreate(BaseModel):
    email: EmailStr
    password: str = PydanticField(min_length=6)
    name: str | None = PydanticField(default=None, max_length=200)
    role_id: str | None = None
    profile: dict[str, Any] = PydanticField(default_factory=dict)
    custom_permissions: dict[str, Any] = PydanticField(default_factory=dict)
    is_active: bool = True


class UserUpdate(BaseModel):
    email: EmailStr | None = None
    password: str | None = PydanticField(default=None, min_length=6)
    name: str | None = PydanticField(default=None, max_length=200)
    profile: dict[str, Any] | None = None
    custom_permissions: dict[str, Any] | None = None
    is_active: bool | None = None


class UserRoleAssign(BaseModel):
    role_id: str | None = None


class UserRead(ORMReadModel):
    id: str
    department_id: str | None = None
    email: str
    name: str | None = None
    role_id: str | None = None
    profile: dict[str, Any]
    custom_permissions: dict[str, Any]
    is_super_admin: bool
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None


class SuperAdminCreate(BaseModel):
    email: EmailStr
    password: str = PydanticField(min_length=6)
    name: str | None = PydanticField(default=None, max_length=200)


class DirectGrantCreate(BaseModel):
    permission_id: str


class FormGrantCreate(BaseModel):
    user_id: str
    permission_id: str


class DirectGrantRead(ORMReadModel):
    id: str
    department_id: str
    user_id: str
    permission_id: str
    permission_name: str
    form_id: str | None = None
    created_at: datetime


class EffectivePermissionsRead(BaseModel):
    user_id: str
    department_id: str
    form_id: str | None = None
    permissions: list[PermissionRead]


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = PydanticField(min_length=6)


class CallerRead(BaseModel):
    user_id: str
    department_id: str | None = None
    role_name: str | None = None
    is_super_admin: bool
    permissions: list[str]


class FormCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=200)
    code: str | None = PydanticField(default=None, max_length=100)
    title: str | None = PydanticField(default=None, max_length=300)
    description: str | None = PydanticField(default=None, max_length=1000)
    form_schema: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None
    status: str | None = PydanticField(default=None, max_length=50)
    is_active: bool = True


class FormUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=200)
    code: str | None = PydanticField(default=None, max_length=100)
    title: str | None = PydanticField(default=None, max_length=300)
    description: str | None = PydanticField(default=None, max_length=1000)
    form_schema: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None
    status: str | None = PydanticField(default=None, max_length=50)
    is_active: bool | None = None


class FormRead(ORMReadModel):
    id: str
    department_id: str
    name: str
    code: str | None = None
    title: str | None = None
    description: str | None = None
    form_schema: dict[str, Any] | None = None
    settings: dict[str, Any] | None = None
    status: str | None = None
    is_active: bool
    version: int
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class FormSchemaVersionRead(ORMReadModel):
    id: str
    form_id: str
    version_number: int
    schema_data: dict[str, Any] | None = None
    created_by: str | None = None
    created_at: datetime


class SubmissionCreate(BaseModel):
    submission_data: dict[str, Any]


class SubmissionRead(ORMReadModel):
    id: str
    department_id: str
    form_id: str
    user_id: str | None = None
    submission_data: dict[str, Any]
    ip_address: str | None = None
    user_agent: str | None = None
    submitted_at: datetime


class WebhookEndpointCreate(BaseModel):
    url: str = PydanticField(min_length=1, max_length=500, pattern=r"^https?://")
    method: str = PydanticField(default="POST", min_length=1, max_length=20)
    headers: dict[str, str] | None = None
    is_active: bool = True


class WebhookEndpointUpdate(BaseModel):
    url: str | None = PydanticField(default=None, min_length=1, max_length=500, pattern=r"^https?://")
    method: str | None = PydanticField(default=None, min_length=1, max_length=20)
    headers: dict[str, str] | None = None
    is_active: bool | None = None


class WebhookEndpointRead(BaseModel):
    id: str
    department_id: str
    url: str
    method: str
    headers: dict[str, str] | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime | None = None


class WebhookTestRequest(BaseModel):
    event_type: str = "webhook.test"
    payload: dict[str, Any] = PydanticField(default_factory=dict)


class DeliveryResultRead(ORMReadModel):
    endpoint_id: str
    url: str
    ok: bool
    status_code: int | None = None
    error: str | None = None
