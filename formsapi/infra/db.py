from __future__ import annotations

import os
from typing import Any

import sqlalchemy as sa
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlmodel import Session, create_engine

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://forms:forms@db:5432/forms_management",
)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def get_engine() -> Engine:
    return engine


def paginate(session: Session, statement: Any, *, page: int, page_size: int) -> tuple[list[Any], int]:
    count_statement = sa.select(sa.func.count()).select_from(statement.order_by(None).subquery())
    total = int(session.execute(count_statement).scalar_one())
    rows = list(session.exec(statement.offset((page - 1) * page_size).limit(page_size)).all())
    return rows, total


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
