"""
Errors raised by the activity cube.

Everything derives from CubeError (a ValueError, like the rest of the
engine's validation failures) so callers can catch the whole family at once.
"""

from typing import Optional


class CubeError(ValueError):
    """Base class for all engine errors."""


class UnknownMember(CubeError):
    """A measure, dimension or segment name could not be resolved."""

    def __init__(self, member: str, kind: str = 'member'):
        self.member = member
        self.kind = kind
        super().__init__(f"Unknown {kind}: '{member}'")


class UnknownPredicate(UnknownMember):
    def __init__(self, name: str):
        super().__init__(name, kind='predicate')


class InvalidQuery(CubeError):
    """Malformed query descriptor (bad operator, date range or order key)."""

    def __init__(self, message: str, member: Optional[str] = None):
        self.member = member
        super().__init__(message)


class SchemaError(CubeError):
    """Schema definitions could not be loaded. Fatal at startup."""


class DuplicateDefinition(SchemaError):
    def __init__(self, name: str, kind: str = 'definition'):
        self.name = name
        self.kind = kind
        super().__init__(f"Duplicate {kind}: '{name}' is already registered")


class CyclicDependency(SchemaError):
    """A derived measure references itself or a measure defined after it."""

    def __init__(self, measure: str, reference: str):
        self.measure = measure
        self.reference = reference
        super().__init__(
            f"Derived measure '{measure}' references '{reference}', "
            f"which is not a previously defined measure"
        )


class UnresolvedDependency(CubeError):
    """A derived measure was requested without the measures it is computed from."""

    def __init__(self, measure: str, missing):
        self.measure = measure
        self.missing = sorted(missing)
        super().__init__(
            f"Derived measure '{measure}' requires {self.missing} in the same query"
        )


class RebuildInProgress(CubeError):
    """A rebuild or refresh was requested while it conflicts with one already running."""

    def __init__(self, rollup: str, activity: str = 'rebuilt'):
        self.rollup = rollup
        super().__init__(f"Rollup '{rollup}' is already being {activity}, retry later")


class StorageError(CubeError):
    """Rollup storage could not read or write a partition or manifest."""

    def __init__(self, message: str, table: Optional[str] = None, partition: Optional[str] = None):
        self.table = table
        self.partition = partition
        super().__init__(message)


class IncomparablePeriods(CubeError):
    """Two result sets were built with different measures or grouping keys."""

    def __init__(self, message: str):
        super().__init__(message)


class Timeout(CubeError):
    """A raw event scan exceeded its deadline."""

    def __init__(self, seconds: float, date_range=None):
        self.seconds = seconds
        self.date_range = date_range
        where = f" for range {date_range}" if date_range is not None else ""
        super().__init__(f"Raw event scan exceeded {seconds:.1f}s deadline{where}")
