"""Exception types raised while loading parameter archives."""


class ArchiveError(Exception):
    """Base class of all failures raised below the load boundary."""


class RecordNotFound(ArchiveError, LookupError):
    """A record name is absent from the container."""

    def __init__(self, name: str):
        super().__init__(f"Record '{name}' not found in archive.")
        self.name = name


class TypeResolutionFailure(ArchiveError, TypeError):
    """A qualified name does not denote any known type."""


class AttributeConflict(ArchiveError, TypeError):
    """An attribute was re-declared with an incompatible type."""


class PayloadShapeMismatch(ArchiveError, TypeError):
    """A payload does not have the shape the reconstruction path requires."""


class ContainerOpenFailure(ArchiveError, ValueError):
    """The byte source is not a readable archive container."""


class MalformedRecord(ArchiveError, ValueError):
    """A structured record is truncated or contains invalid pickle data."""


class LoadError(RuntimeError):
    """The uniform fatal error raised by the load entry points."""
