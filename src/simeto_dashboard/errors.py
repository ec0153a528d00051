"""Error kinds shared by the dashboard builders."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar('T')


class ErrorKind(str, Enum):
    LOAD_FAILURE = 'load_failure'
    MALFORMED_GEOMETRY = 'malformed_geometry'
    GEOMETRY_OP_FAILURE = 'geometry_op_failure'
    MISSING_FIELD = 'missing_field'


class DashboardError(Exception):
    kind: ErrorKind

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source

    def __str__(self) -> str:
        message = super().__str__()
        return f"{self.source}: {message}" if self.source else message


class LoadFailure(DashboardError):
    """A dataset could not be fetched or parsed."""

    kind = ErrorKind.LOAD_FAILURE


class MalformedGeometry(DashboardError):
    """A feature carries no usable coordinates."""

    kind = ErrorKind.MALFORMED_GEOMETRY


class GeometryOpFailure(DashboardError):
    """Buffering or a containment test raised inside the geometry engine."""

    kind = ErrorKind.GEOMETRY_OP_FAILURE


class MissingField(DashboardError):
    kind = ErrorKind.MISSING_FIELD


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or the error that prevented computing it."""

    value: Optional[T] = None
    error: Optional[DashboardError] = None

    @classmethod
    def success(cls, value: T) -> 'Result[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, error: DashboardError) -> 'Result[T]':
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None
