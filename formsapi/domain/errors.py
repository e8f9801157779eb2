from __future__ import annotations


class ServiceError(Exception):
    pass


class NotFoundError(ServiceError):
    pass


class ConflictError(ServiceError):
    pass


class AlreadyGrantedError(ConflictError):
    pass


class ValidationError(ServiceError):
    pass


class ForbiddenError(ServiceError):
    pass


class AuthError(ServiceError):
    pass
