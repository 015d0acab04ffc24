"""
core/result.py -- Discriminated success/failure values for service flows.

AccountService returns Ok(value) or Err(error) instead of raising, so the
transport layer can map each error kind to user-facing text without the core
knowing anything about rendering. `error` is always a str-valued Enum member,
which keeps the set of failures closed and makes them JSON-friendly.

Usage:
    result = service.login(email, password)
    if not result.ok:
        return _LOGIN_MESSAGES[result.error]
    account = result.value.account
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]
