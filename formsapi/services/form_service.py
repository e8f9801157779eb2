from __future__ import annotations

import sqlalchemy as sa
from sqlmodel import Session, col, select

from formsapi.domain.errors import NotFoundError, ValidationError
from formsapi.domain.models import (
    Department,
    Form,
    FormCreate,
    FormSchemaVersion,
    FormSubmission,
    FormUpdate,
    SubmissionCreate,
    now_utc,
)
from formsapi.infra.db import get_engine, paginate


class FormService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_scoped_form(self, session: Session, department_id: str, form_id: str) -> Form:
        form = session.exec(select(Form).where(Form.department_id == department_id).where(Form.id == form_id)).first()
        if form is None:
            raise NotFoundError("form not found")
        return form

    def _record_schema_version(self, session: Session, form: Form, actor_id: str | None) -> None:
        session.add(
            FormSchemaVersion(
                form_id=form.id,
                version_number=form.version,
                schema_data=form.form_schema,
                created_by=actor_id,
            )
        )

    def create_form(self, department_id: str, payload: FormCreate, created_by: str | None = None) -> Form:
        with self._session() as session:
            if session.get(Department, department_id) is None:
                raise NotFoundError("department not found")
            form = Form(
                department_id=department_id,
                name=payload.name,
                code=payload.code,
                title=payload.title,
                description=payload.description,
                form_schema=payload.form_schema,
                settings=payload.settings,
                status=payload.status,
                is_active=payload.is_active,
                version=1,
                created_by=created_by,
            )
            session.add(form)
            session.flush()
            if form.form_schema is not None:
                self._record_schema_version(session, form, created_by)
            session.commit()
            session.refresh(form)
            return form

    def list_forms(
        self,
        department_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
        search: str | None = None,
        is_active: bool | None = None,
    ) -> tuple[list[Form], int]:
        with self._session() as session:
            statement = select(Form).where(Form.department_id == department_id)
            if search:
                pattern = f"%{search.lower()}%"
                statement = statement.where(
                    sa.or_(
                        sa.func.lower(col(Form.name)).like(pattern),
                        sa.func.lower(col(Form.title)).like(pattern),
                    )
                )
            if is_active is not None:
                statement = statement.where(Form.is_active == is_active)
            statement = statement.order_by(col(Form.created_at).desc())
            return paginate(session, statement, page=page, page_size=page_size)

    def get_form(self, department_id: str, form_id: str) -> Form:
        with self._session() as session:
            return self._get_scoped_form(session, department_id, form_id)

    def update_form(
        self,
        department_id: str,
        form_id: str,
        payload: FormUpdate,
        actor_id: str | None = None,
    ) -> Form:
        with self._session() as session:
            form = self._get_scoped_form(session, department_id, form_id)
            if payload.name is not None:
                form.name = payload.name
            for field_name in ("code", "title", "description", "settings", "status"):
                if field_name in payload.model_fields_set:
                    setattr(form, field_name, getattr(payload, field_name))
            if payload.is_active is not None:
                form.is_active = payload.is_active
            schema_changed = "form_schema" in payload.model_fields_set and payload.form_schema != form.form_schema
            if schema_changed:
                form.form_schema = payload.form_schema
                form.version += 1
                self._record_schema_version(session, form, actor_id)
            form.updated_at = now_utc()
            session.add(form)
            session.commit()
            session.refresh(form)
            return form

    def delete_form(self, department_id: str, form_id: str) -> Form:
        with self._session() as session:
            form = self._get_scoped_form(session, department_id, form_id)
            session.delete(form)
            session.commit()
            return form

    def toggle_form_status(self, department_id: str, form_id: str) -> Form:
        with self._session() as session:
            form = self._get_scoped_form(session, department_id, form_id)
            form.is_active = not form.is_active
            form.updated_at = now_utc()
            session.add(form)
            session.commit()
            session.refresh(form)
            return form

    def list_schema_versions(self, department_id: str, form_id: str) -> list[FormSchemaVersion]:
        with self._session() as session:
            form = self._get_scoped_form(session, department_id, form_id)
            statement = (
                select(FormSchemaVersion)
                .where(FormSchemaVersion.form_id == form.id)
                .order_by(col(FormSchemaVersion.version_number).desc())
            )
            return list(session.exec(statement).all())

    def create_submission(
        self,
        department_id: str,
        form_id: str,
        payload: SubmissionCreate,
        *,
        user_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> FormSubmission:
        with self._session() as session:
            form = self._get_scoped_form(session, department_id, form_id)
            if not form.is_active:
                raise ValidationError("form is not accepting submissions")
            submission = FormSubmission(
                department_id=department_id,
                form_id=form.id,
                user_id=user_id,
                submission_data=payload.submission_data,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            session.add(submission)
            session.commit()
            session.refresh(submission)
            return submission

    def list_submissions(
        self,
        department_id: str,
        form_id: str,
        *,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[FormSubmission], int]:
        with self._session() as session:
            form = self._get_scoped_form(session, department_id, form_id)
            statement = (
                select(FormSubmission)
                .where(FormSubmission.form_id == form.id)
                .order_by(col(FormSubmission.submitted_at).desc())
            )
            return paginate(session, statement, page=page, page_size=page_size)

    def get_submission(self, department_id: str, form_id: str, submission_id: str) -> FormSubmission:
        with self._session() as session:
            submission = session.exec(
                select(FormSubmission)
                .where(FormSubmission.department_id == department_id)
                .where(FormSubmission.form_id == form_id)
                .where(FormSubmission.id == submission_id)
            ).first()
            if submission is None:
                raise NotFoundError("submission not found")
            return submission

    def delete_submission(self, department_id: str, form_id: str, submission_id: str) -> FormSubmission:
        with self._session() as session:
            submission = session.exec(
                select(FormSubmission)
                .where(FormSubmission.department_id == department_id)
                .where(FormSubmission.form_id == form_id)
                .where(FormSubmission.id == submission_id)
            ).first()
            if submission is None:
                raise NotFoundError("submission not found")
            session.delete(submission)
            session.commit()
            return submission
