"""
results.py – Tagged success/failure values for the validation checks.

A check returns either ``Ok(value)`` or ``Err(reason)``; callers branch with
``isinstance`` (or the ``ok`` flag) instead of probing optional fields.
"""

from dataclasses import dataclass
from typing import ClassVar, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    reason: str
    ok: ClassVar[bool] = False


Result = Union[Ok[T], Err]
