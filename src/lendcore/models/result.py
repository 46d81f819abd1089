"""Uniform operation envelope."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from lendcore.errors import ErrorCode, LendingError


class ErrorBody(BaseModel):
    code: str
    message: str


class OperationResult(BaseModel):
    """{success, data | error} returned by every service operation."""

    success: bool
    data: dict[str, Any] | None = None
    error: ErrorBody | None = None

    @classmethod
    def ok(cls, data: dict[str, Any]) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: ErrorCode | str, message: str) -> OperationResult:
        code_str = code.value if isinstance(code, ErrorCode) else code
        return cls(success=False, error=ErrorBody(code=code_str, message=message))

    @classmethod
    def from_error(cls, exc: LendingError) -> OperationResult:
        return cls.fail(exc.code, exc.message)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None
