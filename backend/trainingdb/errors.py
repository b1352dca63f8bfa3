from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Dict, List


@dataclass
class EnrollmentError(Exception):
    code: str
    detail: List[Dict[str, str]]

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        reasons = "; ".join(f"{item.get('field')}: {item.get('reason')}" for item in self.detail)
        return f"{self.code} ({reasons})" if reasons else self.code

    def to_payload(self) -> Dict[str, object]:
        return {"code": self.code, "detail": self.detail}


class ValidationError(EnrollmentError):
    """Malformed input; raised before any mutation."""

    status_code = 422


class TransitionError(ValidationError):
    """A status change not allowed by the enrollment workflow."""


class NotFoundError(EnrollmentError):
    status_code = 404


class ConsistencyError(EnrollmentError):
    """The two stores disagree about a module reference."""

    status_code = 409


class StoreError(EnrollmentError):
    status_code = 500

    def to_payload(self) -> Dict[str, object]:
        # Never leak driver messages to callers.
        return {"code": "internal_error", "detail": [{"field": "store", "reason": "internal error"}]}


def not_found(entity: str, identifier: object) -> NotFoundError:
    return NotFoundError(
        code=f"{entity}_not_found",
        detail=[{"field": f"{entity}_id", "reason": f"{entity.replace('_', ' ').capitalize()} {identifier} not found"}],
    )


def invalid(field: str, reason: str, *, code: str = "validation_error") -> ValidationError:
    return ValidationError(code=code, detail=[{"field": field, "reason": reason}])
