"""Error taxonomy for the experimentation engine, rendered as RFC 7807 Problem Details."""

from enum import StrEnum
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class AppError(Exception):
    """Base application error with RFC 7807 Problem Details support."""

    def __init__(
        self,
        title: str,
        detail: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_type: str | None = None,
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.title = title
        self.detail = detail
        self.status_code = status_code
        self.error_type = error_type or f"about:blank#{status_code}"
        self.instance = instance
        self.extra = extra or {}
        super().__init__(detail)

    def to_problem_detail(self) -> dict[str, Any]:
        """Convert to RFC 7807 Problem Details format."""
        problem = {
            "type": self.error_type,
            "title": self.title,
            "status": self.status_code,
            "detail": self.detail,
        }
        if self.instance:
            problem["instance"] = self.instance
        problem.update(self.extra)
        return problem


class NotFoundError(AppError):
    """Resource not found error."""

    def __init__(
        self,
        resource: str,
        resource_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        if detail is None:
            detail = f"{resource} not found"
            if resource_id:
                detail = f"{resource} with id '{resource_id}' not found"
        super().__init__(
            title="Not Found",
            detail=detail,
            status_code=status.HTTP_404_NOT_FOUND,
            error_type="about:blank#not-found",
        )


class FlagNotFoundError(NotFoundError):
    """Feature flag key does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__("Feature flag", detail=f"Feature flag '{key}' not found")
        self.key = key


class ErrorCode(StrEnum):
    """Machine-readable experimentation error codes."""

    EXPERIMENT_NOT_FOUND = "EXPERIMENT_NOT_FOUND"
    VARIANT_NOT_FOUND = "VARIANT_NOT_FOUND"
    INVALID_CONFIG = "INVALID_CONFIG"
    STATISTICAL_ERROR = "STATISTICAL_ERROR"
    ASSIGNMENT_ERROR = "ASSIGNMENT_ERROR"


class ExperimentationError(AppError):
    """Error raised by the experimentation engine, tagged with an ErrorCode."""

    code: ErrorCode

    def __init__(
        self,
        code: ErrorCode,
        title: str,
        detail: str,
        status_code: int,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        super().__init__(
            title=title,
            detail=detail,
            status_code=status_code,
            error_type=f"about:blank#{code.lower().replace('_', '-')}",
            extra={"code": str(code), **(extra or {})},
        )


class ExperimentNotFoundError(ExperimentationError):
    """Experiment id has never existed in the registry."""

    def __init__(self, experiment_id: object) -> None:
        super().__init__(
            ErrorCode.EXPERIMENT_NOT_FOUND,
            title="Experiment Not Found",
            detail=f"Experiment with id '{experiment_id}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
        )
        self.experiment_id = experiment_id


class VariantNotFoundError(ExperimentationError):
    """Variant id is not part of the experiment definition."""

    def __init__(self, experiment_id: object, variant_id: str) -> None:
        super().__init__(
            ErrorCode.VARIANT_NOT_FOUND,
            title="Variant Not Found",
            detail=f"Variant '{variant_id}' not found in experiment '{experiment_id}'",
            status_code=status.HTTP_404_NOT_FOUND,
        )
        self.variant_id = variant_id


class InvalidConfigError(ExperimentationError):
    """Experiment or flag configuration failed validation."""

    def __init__(self, detail: str, errors: list[str] | None = None) -> None:
        super().__init__(
            ErrorCode.INVALID_CONFIG,
            title="Invalid Configuration",
            detail=detail,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            extra={"errors": errors or [detail]},
        )
        self.errors = errors or [detail]


class StatisticalError(ExperimentationError):
    """Result computation failed."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            ErrorCode.STATISTICAL_ERROR,
            title="Statistical Computation Failed",
            detail=detail,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class AssignmentError(ExperimentationError):
    """Assignment could not be persisted or read back."""

    def __init__(self, detail: str) -> None:
        super().__init__(
            ErrorCode.ASSIGNMENT_ERROR,
            title="Assignment Failed",
            detail=detail,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:  # noqa: ARG001
    """Handle AppError exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem_detail(),
        media_type="application/problem+json",
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # noqa: ARG001
    """Handle unexpected exceptions."""
    error = AppError(
        title="Internal Server Error",
        detail="An unexpected error occurred",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_problem_detail(),
        media_type="application/problem+json",
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers with the FastAPI application."""
    app.add_exception_handler(AppError, app_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
