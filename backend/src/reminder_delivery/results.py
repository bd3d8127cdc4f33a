from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Literal, TypeVar, Union

from .errors import DeliveryError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: Literal[True] = True


@dataclass(frozen=True)
class Failure:
    error: DeliveryError
    ok: Literal[False] = False

    @property
    def code(self) -> str:
        return self.error.code


Result = Union[Ok[T], Failure]
