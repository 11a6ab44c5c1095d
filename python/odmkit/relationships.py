"""Resolution of relations between entity schemas."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from odmkit.errors import SchemaError
from odmkit.schema import PropertySchema, Schema, get_schema


class RelationKind(StrEnum):
    FORWARD = "forward"  # owner stores the target's primary key
    INVERSE = "inverse"  # target stores the owner's primary key
    PIVOT = "pivot"  # a pivot entity stores both keys


@dataclass(frozen=True)
class Relation:
    """Resolved storage layout of one relation property.

    For ``INVERSE`` relations ``reverse`` is the forward property on the
    target. For ``PIVOT`` relations ``left`` and ``right`` are the pivot's
    forward properties towards the owner and towards the target.
    """

    kind: RelationKind
    owner: Schema
    property: PropertySchema
    target: Schema
    reverse: PropertySchema | None = None
    pivot: Schema | None = None
    left: PropertySchema | None = None
    right: PropertySchema | None = None

    @property
    def is_collection(self) -> bool:
        return self.property.array


def _same_via(candidate: PropertySchema, from_property: PropertySchema) -> bool:
    if from_property.via is None:
        return True
    return candidate.resolved_via() is from_property.resolved_via()


def find_reverse_reference(
    schema: Schema,
    to_type: type,
    from_property: PropertySchema,
    exclude: PropertySchema | None = None,
) -> PropertySchema:
    """Find the property of ``schema`` pairing with ``from_property``.

    ``to_type`` is the class the wanted property must point at. For a pivot
    schema it selects the side: the owner type for the left side, the
    target type for the right side.

    Raises:
        SchemaError: When no property or more than one equally good property
            qualifies.
    """
    if (
        from_property.is_back_reference
        and from_property.mapped_by
        and from_property.resolved_type() is schema.cls
    ):
        return schema.get_property(from_property.mapped_by)

    candidates: list[PropertySchema] = []
    for prop in schema.relations:
        if prop is from_property or prop is exclude:
            continue
        if prop.resolved_type() is not to_type:
            continue
        if prop.is_back_reference:
            # a back reference must be mapped to from_property, through the same pivot
            if prop.mapped_by and prop.mapped_by != from_property.name:
                continue
            if not _same_via(prop, from_property):
                continue
        candidates.append(prop)

    if len(candidates) == 1:
        return candidates[0]

    if candidates:
        for candidate in candidates:
            if candidate.mapped_by == from_property.name:
                return candidate
        for candidate in candidates:
            if not candidate.is_back_reference:
                return candidate
        names = ", ".join(candidate.name for candidate in candidates)
        raise SchemaError(
            f"{schema.class_name} has multiple potential reverse references [{names}] for "
            f"{from_property.name} to {to_type.__name__}. Set mapped_by on the back reference "
            "to disambiguate."
        )

    raise SchemaError(
        f"{schema.class_name} has no reference to {to_type.__name__} matching {from_property.name}"
    )


def resolve_pivot(owner: Schema, prop: PropertySchema) -> tuple[PropertySchema, PropertySchema]:
    """Resolve the (left, right) pivot properties of a many-to-many relation.

    ``left`` points at the owner type, ``right`` at the target type. When both
    sides have the same type the first declared matching pivot property is
    ``left`` and the next one is ``right``.
    """
    via = prop.resolved_via()
    if via is None:
        raise SchemaError(f"{owner.class_name}.{prop.name} has no pivot")
    pivot = get_schema(via)
    target_type = prop.resolved_type()

    left = pivot.find_reverse_reference(owner.cls, prop)
    right = pivot.find_reverse_reference(target_type, prop, exclude=left)
    for side in (left, right):
        if not side.is_reference:
            raise SchemaError(
                f"Pivot {pivot.class_name}.{side.name} must be a reference, "
                f"required by {owner.class_name}.{prop.name}"
            )
    return left, right


def resolve_relation(owner: Schema, prop: PropertySchema | str) -> Relation:
    """Resolve how ``prop`` of ``owner`` is laid out in storage.

    Raises:
        SchemaError: If the property is not a relation or cannot be resolved.
    """
    if isinstance(prop, str):
        prop = owner.get_property(prop)

    if not prop.is_relation:
        raise SchemaError(f"Field {prop.name} of {owner.class_name} is not marked as reference")

    target = prop.get_resolved_schema()
    if target.primary_key is None:
        raise SchemaError(f"{owner.class_name}.{prop.name} points to {target.class_name} without primary key")

    if prop.is_reference:
        if prop.array or prop.map:
            raise SchemaError(f"Forward reference {owner.class_name}.{prop.name} must be single-valued")
        return Relation(RelationKind.FORWARD, owner, prop, target)

    if owner.primary_key is None:
        raise SchemaError(f"{owner.class_name} needs a primary key for back reference {prop.name}")

    if prop.via is not None:
        left, right = resolve_pivot(owner, prop)
        return Relation(
            RelationKind.PIVOT,
            owner,
            prop,
            target,
            pivot=get_schema(prop.resolved_via()),
            left=left,
            right=right,
        )

    reverse = target.find_reverse_reference(owner.cls, prop)
    if not reverse.is_reference:
        raise SchemaError(
            f"Back reference {owner.class_name}.{prop.name} pairs with {target.class_name}.{reverse.name}, "
            "which is not a forward reference"
        )
    return Relation(RelationKind.INVERSE, owner, prop, target, reverse=reverse)
