# comtrade_MultiFileAnalyzer/core/errors.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    INVALID_INPUT = "InvalidInput"
    VALIDATION_FAILURE = "ValidationFailure"
    RESOURCE_MISSING = "ResourceMissing"
    WORKER_FAILURE = "WorkerFailure"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    UNEXPECTED = "Unexpected"


class AnalyzerError(Exception):
    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidInput(AnalyzerError):
    kind = ErrorKind.INVALID_INPUT


class ValidationFailure(AnalyzerError):
    kind = ErrorKind.VALIDATION_FAILURE


class ResourceMissing(AnalyzerError):
    kind = ErrorKind.RESOURCE_MISSING


class WorkerFailure(AnalyzerError):
    kind = ErrorKind.WORKER_FAILURE


class PersistenceFailure(AnalyzerError):
    kind = ErrorKind.PERSISTENCE_FAILURE


@dataclass(frozen=True)
class ErrorDescriptor:
    kind: ErrorKind
    message: str
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "context": dict(self.context)}


def describe(exc: BaseException, **context) -> ErrorDescriptor:
    """Turn any exception into a structured descriptor (unknown types -> Unexpected)."""
    if isinstance(exc, AnalyzerError):
        ctx = {**exc.context, **context}
        return ErrorDescriptor(kind=exc.kind, message=exc.message, context=ctx)
    return ErrorDescriptor(
        kind=ErrorKind.UNEXPECTED,
        message=f"{type(exc).__name__}: {exc}",
        context=context,
    )
