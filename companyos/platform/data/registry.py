from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import inspect
from sqlalchemy.orm import InstrumentedAttribute

from companyos.platform.security.errors import UnsupportedOperationError


ModelT = TypeVar("ModelT")


@dataclass(frozen=True)
class EntityDescriptor(Generic[ModelT]):
    """Static scoping metadata for one entity.

    Column names are model attribute names; they are checked against the
    mapped model when the descriptor is built so a typo fails at import time
    rather than inside a request.
    """

    name: str
    model: type[ModelT]
    namespace: str
    resource: str
    soft_delete_column: str | None = "deleted_at"
    owner_column: str | None = None
    department_column: str | None = None
    created_by_column: str | None = "created_by"
    updated_at_column: str | None = "updated_at"
    primary_key: str = "id"

    def __post_init__(self) -> None:
        available = set(self.column_names)
        declared = {
            "soft_delete_column": self.soft_delete_column,
            "owner_column": self.owner_column,
            "department_column": self.department_column,
            "created_by_column": self.created_by_column,
            "updated_at_column": self.updated_at_column,
            "primary_key": self.primary_key,
        }
        for role, column_name in declared.items():
            if column_name is not None and column_name not in available:
                raise ValueError(f"{self.name}: {role} '{column_name}' is not a column of {self.model.__name__}")

    @property
    def column_names(self) -> list[str]:
        return list(inspect(self.model).columns.keys())

    def has_column(self, column_name: str) -> bool:
        return column_name in self.column_names

    def column(self, column_name: str) -> InstrumentedAttribute[Any]:
        if not self.has_column(column_name):
            raise UnsupportedOperationError(f"Unknown column '{column_name}' for entity '{self.name}'")
        return getattr(self.model, column_name)

    @property
    def pk(self) -> InstrumentedAttribute[Any]:
        return getattr(self.model, self.primary_key)


class EntityRegistry:
    """Entity name to descriptor mapping, fixed once built."""

    def __init__(self, descriptors: Iterable[EntityDescriptor[Any]]) -> None:
        entries: dict[str, EntityDescriptor[Any]] = {}
        for descriptor in descriptors:
            if descriptor.name in entries:
                raise ValueError(f"Duplicate entity registration: {descriptor.name}")
            entries[descriptor.name] = descriptor
        self._entries = entries

    def get(self, name: str) -> EntityDescriptor[Any]:
        try:
            return self._entries[name]
        except KeyError:
            raise UnsupportedOperationError(f"Unknown entity '{name}'") from None

    def names(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[EntityDescriptor[Any]]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)
