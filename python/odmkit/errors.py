"""Exception hierarchy for odmkit.

Storage driver exceptions are not wrapped; they propagate unchanged.
"""

from __future__ import annotations


class OdmError(Exception):
    """Base exception for all odmkit errors."""


class SchemaError(OdmError):
    """Raised for entity or relation misconfiguration.

    Detected while registering a schema or building a query, never deferred
    to execution.
    """


class NotFoundError(OdmError, LookupError):
    """Raised when an operation requiring exactly one result finds none."""


class UnpopulatedAccessError(OdmError, AttributeError):
    """Base for reads of data that was never loaded."""


class UnpopulatedReferenceError(UnpopulatedAccessError):
    """Raised when reading a non-key field of a reference placeholder."""

    def __init__(self, entity_name: str, field_name: str) -> None:
        self.entity_name = entity_name
        self.field_name = field_name
        super().__init__(
            f"Reference {entity_name} was not completely populated (only primary key). "
            f"Reading '{field_name}' requires join_with(), use_join_with() or hydrate_entity()."
        )


class UnpopulatedRelationError(UnpopulatedAccessError):
    """Raised when reading a back-reference that was not joined."""

    def __init__(self, entity_name: str, field_name: str) -> None:
        self.entity_name = entity_name
        self.field_name = field_name
        super().__init__(
            f"{field_name} was not populated. "
            f"Use join_with('{field_name}') when querying {entity_name}."
        )


class ConversionError(OdmError, ValueError):
    """Raised when a value cannot be converted for its property."""

    def __init__(self, message: str, property_name: str) -> None:
        self.property_name = property_name
        super().__init__(message)


class ParameterError(OdmError):
    """Raised when a filter references a parameter that was not bound."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Parameter {name} not defined")


class HydrationError(OdmError):
    """Raised when a reference placeholder cannot be hydrated."""
