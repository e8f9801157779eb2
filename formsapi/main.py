from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from formsapi.api.responses import fail, ok
from formsapi.api.routers import auth, departments, forms, permissions, roles, super_admins, users, webhooks
from formsapi.infra.audit import AuditMiddleware
from formsapi.infra.db import check_db_ready
from formsapi.services.user_service import UserService

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    try:
        UserService().bootstrap_super_admin()
    except Exception:
        logger.exception("Super admin bootstrap failed")
    yield


app = FastAPI(
    title="forms-management-api",
    description="Multi-department forms backend with role based access and webhook delivery.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(AuditMiddleware)

DEPARTMENT_PREFIX = "/api/departments/{department_id}"

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(departments.router, prefix="/api/departments", tags=["departments"])
app.include_router(users.router, prefix=f"{DEPARTMENT_PREFIX}/users", tags=["users"])
app.include_router(roles.router, prefix=f"{DEPARTMENT_PREFIX}/roles", tags=["roles"])
app.include_router(permissions.router, prefix=f"{DEPARTMENT_PREFIX}/permissions", tags=["permissions"])
app.include_router(forms.router, prefix=f"{DEPARTMENT_PREFIX}/forms", tags=["forms"])
app.include_router(webhooks.router, prefix=f"{DEPARTMENT_PREFIX}/webhooks", tags=["webhooks"])
app.include_router(super_admins.router, prefix="/api/super-admins", tags=["super-admins"])


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=fail(str(exc.detail)).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body") or "request"
        errors.setdefault(location, []).append(str(error.get("msg", "invalid value")))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=fail("Validation failed", errors).model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=fail("Internal server error").model_dump(),
    )


@app.get("/healthz")
def healthz() -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(ok({"status": "ok"})))


@app.get("/readyz")
def readyz() -> JSONResponse:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=jsonable_encoder(fail("not_ready").model_copy(update={"data": checks})),
        )
    return JSONResponse(content=jsonable_encoder(ok(checks, message="ready")))
