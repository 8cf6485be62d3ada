"""
Tagged results for service operations.

Services return an `Outcome` for every expected result (success or a named
refusal). Only unexpected store failures raise; those reach the app's 500
handler untouched.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

OK = "ok"
CREATED = "created"
NOT_FOUND = "not_found"
CONFLICT = "conflict"
FORBIDDEN = "forbidden"
INVALID = "invalid"

STATUS_BY_KIND = {
    OK: 200,
    CREATED: 201,
    NOT_FOUND: 404,
    CONFLICT: 400,
    FORBIDDEN: 403,
    INVALID: 400,
}


@dataclass(frozen=True)
class Outcome:
    kind: str
    message: str
    data: Any = None

    @property
    def succeeded(self) -> bool:
        return self.kind in (OK, CREATED)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]


def ok(message: str, data: Any = None) -> Outcome:
    return Outcome(OK, message, data)


def created(message: str, data: Any = None) -> Outcome:
    return Outcome(CREATED, message, data)


def not_found(message: str) -> Outcome:
    return Outcome(NOT_FOUND, message)


def conflict(message: str) -> Outcome:
    return Outcome(CONFLICT, message)


def forbidden(message: str) -> Outcome:
    return Outcome(FORBIDDEN, message)


def invalid(message: str, errors: list[dict[str, str]] | None = None) -> Outcome:
    return Outcome(INVALID, message, {"errors": errors} if errors else None)
