"""Audit error taxonomy shared by services and routers."""

from __future__ import annotations

from typing import Any, Optional


class AuditError(Exception):
    """Base error rendered as ``{"ok": false, "error": code}`` by the API."""

    status_code = 500
    code = "AUDIT_ERROR"

    def __init__(self, code: Optional[str] = None, detail: Any = None):
        self.code = code or self.code
        self.detail = detail
        super().__init__(f"{self.code}: {detail}" if detail else self.code)


class InputError(AuditError):
    status_code = 400
    code = "BAD_INPUT"


class NotFoundError(AuditError):
    status_code = 404
    code = "NOT_FOUND"


class PrerequisiteError(AuditError):
    status_code = 409
    code = "PREREQ_FAILED"


class StageValidationError(AuditError):
    status_code = 422
    code = "STAGE_INVALID"


class FailedDependencyError(AuditError):
    status_code = 424
    code = "PREREQ_FAILED_DEPENDENCY"


class StageExecutionError(Exception):
    """A stage executor could not produce output (provider, network, parse)."""


class MalformedProductError(StageExecutionError):
    """Product data cannot be mapped into a claim profile."""


class RunSupersededError(Exception):
    """The run left ``running`` under the worker; further writes are dropped."""


class LLMUnavailableError(StageExecutionError):
    """No LLM API key is configured."""


class UnauthorizedError(AuditError):
    status_code = 401
    code = "UNAUTHORIZED"


class ServiceDisabledError(AuditError):
    status_code = 503
    code = "DISABLED"
