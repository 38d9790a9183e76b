"""
Ссылка на связанную сущность: либо только id, либо загруженный объект.

Вызывающий код обязан разобрать оба варианта (isinstance), поэтому
"голый" id нельзя случайно использовать как сущность.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Unresolved(Generic[T]):
    id: str


@dataclass(frozen=True)
class Resolved(Generic[T]):
    value: T


Reference = Unresolved[T] | Resolved[T]


def resolve(ref_id: str, loaded: T | None) -> Unresolved[T] | Resolved[T]:
    if loaded is None:
        return Unresolved(ref_id)
    return Resolved(loaded)
