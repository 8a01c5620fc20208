"""Entity descriptors: typed descriptions of mapped entities.

Descriptors are created once when the registry is populated and are
immutable afterwards. They describe an entity's scalar fields and its
relations to other entities, and are used to validate every field reference
in a query before execution.

Example:
    >>> movie = EntityDescriptor(
    ...     name="Movie",
    ...     fields=(
    ...         FieldDescriptor("Id", SemanticType.INTEGER),
    ...         FieldDescriptor("Title", SemanticType.STRING),
    ...     ),
    ...     relations=(
    ...         RelationDescriptor("Actors", RelationKind.TO_MANY, "Actor", "MovieId"),
    ...     ),
    ... )
"""

from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass, field
from typing import Any

from linq_engine.domain.value_objects import RelationKind, SemanticType, type_of_annotation


@dataclass(frozen=True, slots=True)
class FieldDescriptor:
    """A scalar field of an entity."""

    name: str
    type: SemanticType
    nullable: bool = False

    def __post_init__(self) -> None:
        if not self.name or "." in self.name:
            raise ValueError(f"Invalid field name {self.name!r}")
        if self.type in (SemanticType.NULL, SemanticType.SEQUENCE):
            raise ValueError(f"Field '{self.name}' cannot have type {self.type.value}")


@dataclass(frozen=True, slots=True)
class RelationDescriptor:
    """A navigable relation from one entity to another.

    Attributes:
        name: Navigation name (e.g. ``Actors`` on Movie)
        kind: TO_ONE or TO_MANY
        target: Name of the related entity
        foreign_key: For TO_ONE, the field on the owning entity that holds
            the target's key. For TO_MANY, the field on the target that
            holds the owner's key.
        nullable: Whether a TO_ONE relation may be absent
    """

    name: str
    kind: RelationKind
    target: str
    foreign_key: str
    nullable: bool = False


@dataclass(frozen=True)
class EntityDescriptor:
    """Typed description of an entity (a mapped class or table)."""

    name: str
    fields: tuple[FieldDescriptor, ...]
    relations: tuple[RelationDescriptor, ...] = ()
    key: str = "Id"
    table: str | None = None
    _field_index: dict[str, FieldDescriptor] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )
    _relation_index: dict[str, RelationDescriptor] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "relations", tuple(self.relations))
        seen: set[str] = set()
        for item in (*self.fields, *self.relations):
            if item.name in seen:
                raise ValueError(f"Duplicate member '{item.name}' on entity '{self.name}'")
            seen.add(item.name)
            if isinstance(item, FieldDescriptor):
                self._field_index[item.name] = item
            else:
                self._relation_index[item.name] = item
        if self.key not in self._field_index:
            raise ValueError(f"Key field '{self.key}' is not a field of '{self.name}'")

    @property
    def table_name(self) -> str:
        """Name of the backing table in a relational store."""
        return self.table or self.name

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> FieldDescriptor | None:
        return self._field_index.get(name)

    def get_relation(self, name: str) -> RelationDescriptor | None:
        return self._relation_index.get(name)

    def has_member(self, name: str) -> bool:
        return name in self._field_index or name in self._relation_index


def entity_from_dataclass(
    cls: type,
    *,
    name: str | None = None,
    key: str = "Id",
    relations: tuple[RelationDescriptor, ...] = (),
    table: str | None = None,
) -> EntityDescriptor:
    """Derive an entity descriptor from a dataclass.

    ``Optional[T]`` annotations become nullable fields. Annotations that do
    not map to a semantic type (lists, other model classes) are skipped so
    they can be described as relations instead.

    Args:
        cls: A dataclass type.
        name: Entity name (defaults to the class name).
        key: Key field name.
        relations: Relations to attach to the entity.
        table: Backing table name.

    Returns:
        The entity descriptor.
    """
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls!r} is not a dataclass")

    hints = typing.get_type_hints(cls)
    relation_names = {r.name for r in relations}
    fields: list[FieldDescriptor] = []
    for dc_field in dataclasses.fields(cls):
        if dc_field.name in relation_names:
            continue
        semantic, nullable = _annotation_type(hints.get(dc_field.name))
        if semantic is None:
            continue
        fields.append(FieldDescriptor(dc_field.name, semantic, nullable))

    return EntityDescriptor(
        name=name or cls.__name__,
        fields=tuple(fields),
        relations=relations,
        key=key,
        table=table,
    )


def _annotation_type(annotation: Any) -> tuple[SemanticType | None, bool]:
    """Unwrap Optional[T] and map T to a semantic type."""
    args = typing.get_args(annotation)
    if args and type(None) in args:
        remaining = [a for a in args if a is not type(None)]
        if len(remaining) == 1:
            return type_of_annotation(remaining[0]), True
        return None, True
    return type_of_annotation(annotation), False
