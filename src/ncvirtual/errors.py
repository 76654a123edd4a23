"""
Exceptions raised by ncvirtual.

Every error derives from `NCVirtualError` and from the builtin exception a
caller would naturally catch for the same condition, so ``except IndexError``
keeps working around out-of-bounds reads.
"""


class NCVirtualError(Exception):
    """Base class for all ncvirtual errors."""


class ResourceError(NCVirtualError, OSError):
    """Opening, closing or resolving an entity in a NetCDF file failed."""


class RangeError(NCVirtualError, IndexError):
    """
    An index lies outside an array, or a packed value does not fit the
    stored type.
    """


class StructureError(NCVirtualError, ValueError):
    """Members of an aggregation disagree on their dimensions."""


class EncodingError(NCVirtualError, ValueError):
    """A value cannot be encoded with the storage attributes of a variable."""
