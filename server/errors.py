from __future__ import annotations


class SkillSwapError(Exception):
    """Base class for errors surfaced to API callers as ``{"message": ...}``."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SkillSwapError):
    status_code = 400


class JoinWindowError(SkillSwapError):
    status_code = 400


class ConflictError(SkillSwapError):
    status_code = 409

    def __init__(self, message: str, *, status_code: int = 409) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(SkillSwapError):
    status_code = 401


class AuthorizationError(SkillSwapError):
    status_code = 403


class NotFoundError(SkillSwapError):
    status_code = 404
