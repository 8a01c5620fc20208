"""Entity Model Registry.

Holds the entity descriptors that every query is validated against. The
registry is populated once during process initialization, then frozen;
afterwards it is read-only and shared by all planners and executors without
locking.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence

from linq_engine.domain.entities.entity import (
    EntityDescriptor,
    FieldDescriptor,
    RelationDescriptor,
)
from linq_engine.domain.errors import (
    DuplicateEntity,
    RegistryFrozen,
    TypeMismatch,
    UnknownEntity,
    UnknownField,
)
from linq_engine.domain.value_objects import RelationKind, SemanticType


@dataclass(frozen=True)
class ResolvedField:
    """A field path resolved against an entity.

    Attributes:
        entity: Entity the path starts from
        path: Member names, relations first, field last
        relations: Relations traversed (one per hop before the field)
        field: The terminal field descriptor
        nullable: True if the field or any traversed relation is nullable
    """

    entity: EntityDescriptor
    path: tuple[str, ...]
    relations: tuple[RelationDescriptor, ...]
    field: FieldDescriptor
    nullable: bool

    @property
    def type(self) -> SemanticType:
        return self.field.type


class EntityRegistry:
    """Registry of entity descriptors.

    Example:
        >>> registry = EntityRegistry()
        >>> registry.register(movie_descriptor)
        >>> registry.register(actor_descriptor)
        >>> registry.freeze()
        >>> registry.resolve_field("Actor", "Movie.Title").type
        <SemanticType.STRING: 'string'>
    """

    def __init__(self, descriptors: Sequence[EntityDescriptor] = ()) -> None:
        self._entities: dict[str, EntityDescriptor] = {}
        self._frozen = False
        for descriptor in descriptors:
            self.register(descriptor)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: EntityDescriptor) -> None:
        """Register an entity descriptor.

        Raises:
            DuplicateEntity: If the name is already registered.
            RegistryFrozen: If the registry has been frozen.
        """
        if self._frozen:
            raise RegistryFrozen(
                f"Cannot register '{descriptor.name}': registry is frozen"
            )
        if descriptor.name in self._entities:
            raise DuplicateEntity(descriptor.name)
        self._entities[descriptor.name] = descriptor

    def freeze(self) -> None:
        """Validate every relation and make the registry read-only.

        Raises:
            UnknownEntity: If a relation targets an unregistered entity.
            UnknownField: If a relation's foreign key field does not exist.
        """
        for descriptor in self._entities.values():
            for relation in descriptor.relations:
                target = self.get(relation.target)
                fk_owner = descriptor if relation.kind == RelationKind.TO_ONE else target
                if fk_owner.get_field(relation.foreign_key) is None:
                    raise UnknownField(relation.foreign_key, fk_owner.name)
        self._frozen = True

    def get(self, name: str) -> EntityDescriptor:
        """Get a descriptor by entity name.

        Raises:
            UnknownEntity: If the entity is not registered.
        """
        try:
            return self._entities[name]
        except KeyError:
            raise UnknownEntity(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)

    def resolve_field(
        self,
        entity: str | EntityDescriptor,
        field_path: str | Sequence[str],
        expected: SemanticType | None = None,
    ) -> ResolvedField:
        """Resolve a dotted field path against an entity.

        The path may traverse to-one relations (``Movie.Title`` from Actor)
        and must end on a scalar field.

        Args:
            entity: Entity name or descriptor the path starts from.
            field_path: Dotted path or sequence of member names.
            expected: If given, the field's type must be compatible with it.

        Returns:
            The resolved field.

        Raises:
            UnknownEntity: If the entity or a relation target is unknown.
            UnknownField: If a path segment names no member.
            TypeMismatch: If the path crosses a to-many relation, ends on a
                relation, descends into a scalar field, or the field type
                is incompatible with ``expected``.
        """
        current = self.get(entity) if isinstance(entity, str) else entity
        start = current
        parts = tuple(field_path.split(".")) if isinstance(field_path, str) else tuple(field_path)
        if not parts or any(not p for p in parts):
            raise UnknownField(".".join(parts), start.name)

        relations: list[RelationDescriptor] = []
        nullable = False
        for i, part in enumerate(parts):
            is_last = i == len(parts) - 1
            fd = current.get_field(part)
            if fd is not None:
                if not is_last:
                    raise TypeMismatch(
                        f"Field '{current.name}.{part}' is a scalar and has no member "
                        f"'{parts[i + 1]}'"
                    )
                if expected is not None and not fd.type.compatible_with(expected):
                    raise TypeMismatch(
                        f"Field '{current.name}.{part}' has type {fd.type.value}, "
                        f"expected {expected.value}",
                        expected=expected,
                        actual=fd.type,
                    )
                return ResolvedField(
                    entity=start,
                    path=parts,
                    relations=tuple(relations),
                    field=fd,
                    nullable=nullable or fd.nullable,
                )

            relation = current.get_relation(part)
            if relation is None:
                raise UnknownField(part, current.name)
            if relation.kind == RelationKind.TO_MANY:
                raise TypeMismatch(
                    f"Relation '{current.name}.{part}' is to-many and yields a sequence, "
                    "not a scalar; aggregate it in a let sub-query"
                )
            if is_last:
                raise TypeMismatch(
                    f"'{current.name}.{part}' is a relation, not a scalar field"
                )
            relations.append(relation)
            nullable = nullable or relation.nullable
            current = self.get(relation.target)

        raise UnknownField(".".join(parts), start.name)  # pragma: no cover
