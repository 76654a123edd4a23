"""
Attribute and dimension mappings.

Each dataset kind has its own flavour:

- ``Attributes`` / ``Dimensions`` read an open file live.
- ``DeferAttributes`` / ``DeferDimensions`` answer from a metadata snapshot.
- ``MFAttributes`` / ``MFDimensions`` merge the members of an aggregation.
- ``SubDimensions`` reports the lengths selected by an index view.
"""

from collections.abc import Iterator, Mapping, MutableMapping, Sequence
from typing import Any

from ncvirtual import backend


class Attributes(MutableMapping):
    """
    Attributes of a group or variable in an open file.

    Parameters
    ----------
    dataset : Dataset
        Owner of the file handle; used to refuse access after close.
    entity : netCDF4.Group or netCDF4.Variable
        The entity carrying the attributes.
    """

    def __init__(self, dataset, entity):
        self._dataset = dataset
        self._entity = entity

    def _live(self):
        self._dataset._check_open()
        return self._entity

    def __getitem__(self, name: str) -> Any:
        entity = self._live()
        if name not in entity.ncattrs():
            raise KeyError(name)
        return entity.getncattr(name)

    def __setitem__(self, name: str, value: Any) -> None:
        backend.set_attr(self._live(), name, value)

    def __delitem__(self, name: str) -> None:
        entity = self._live()
        if name not in entity.ncattrs():
            raise KeyError(name)
        backend.del_attr(entity, name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._live().ncattrs())

    def __len__(self) -> int:
        return len(self._live().ncattrs())

    def __repr__(self):
        return f"{type(self).__name__}({dict(self)!r})"


class DeferAttributes(MutableMapping):
    """
    Attributes answered from a metadata snapshot.

    Reading never touches the file. Setting or deleting an attribute opens
    the file, applies the change, closes it again and updates the snapshot
    in place, so every later lookup of the same entity sees the change.

    Parameters
    ----------
    resource : Resource
        The deferred file.
    path : str
        Path of the group or variable inside the file.
    data : dict
        Attribute snapshot of that entity, shared with the resource metadata.
    """

    def __init__(self, resource, path: str, data: dict[str, Any]):
        self.resource = resource
        self.path = path
        self._data = data

    def __getitem__(self, name: str) -> Any:
        return self._data[name]

    def __setitem__(self, name: str, value: Any) -> None:
        with self.resource.acquire() as handle:
            backend.set_attr(backend.resolve(handle, self.path), name, value)
        self._data[name] = value

    def __delitem__(self, name: str) -> None:
        if name not in self._data:
            raise KeyError(name)
        with self.resource.acquire() as handle:
            backend.del_attr(backend.resolve(handle, self.path), name)
        del self._data[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"{type(self).__name__}({self._data!r})"


class MFAttributes(MutableMapping):
    """
    Attributes of an aggregation.

    Values are read from the first member; writes go to every member so
    they stay consistent.
    """

    def __init__(self, members: Sequence[MutableMapping]):
        self.members = list(members)

    def __getitem__(self, name: str) -> Any:
        return self.members[0][name]

    def __setitem__(self, name: str, value: Any) -> None:
        for attrs in self.members:
            attrs[name] = value

    def __delitem__(self, name: str) -> None:
        for attrs in self.members:
            del attrs[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.members[0])

    def __len__(self) -> int:
        return len(self.members[0])

    def __repr__(self):
        return f"{type(self).__name__}({dict(self)!r})"


class Dimensions(Mapping):
    """Dimension name -> length of a group in an open file."""

    def __init__(self, dataset, group):
        self._dataset = dataset
        self._group = group

    def _live(self):
        self._dataset._check_open()
        return self._group

    def __getitem__(self, name: str) -> int:
        return len(self._live().dimensions[name])

    def __iter__(self) -> Iterator[str]:
        return iter(self._live().dimensions)

    def __len__(self) -> int:
        return len(self._live().dimensions)

    @property
    def unlimited(self) -> tuple[str, ...]:
        return tuple(backend.unlimited_dimensions(self._live()))

    def __repr__(self):
        return f"{type(self).__name__}({dict(self)!r})"


class DeferDimensions(Mapping):
    """Dimension name -> length taken from a metadata snapshot."""

    def __init__(self, data: Mapping[str, int], unlimited: Sequence[str] = ()):
        self._data = dict(data)
        self.unlimited = tuple(unlimited)

    def __getitem__(self, name: str) -> int:
        return self._data[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"{type(self).__name__}({self._data!r})"


class MFDimensions(Mapping):
    """
    Dimensions of an aggregation.

    The aggregation dimension has the summed length of the members
    (concatenation) or the number of members (stacking, listed first).
    Every other dimension has the length of the first member.
    """

    def __init__(self, members: Sequence[Mapping[str, int]], aggdim: str, isnewdim: bool):
        self.members = list(members)
        self.aggdim = aggdim
        self.isnewdim = isnewdim

    def __getitem__(self, name: str) -> int:
        if name == self.aggdim:
            if self.isnewdim:
                return len(self.members)
            return sum(dims[name] for dims in self.members)
        return self.members[0][name]

    def _names(self) -> list[str]:
        names = list(self.members[0])
        if self.isnewdim:
            names.insert(0, self.aggdim)
        return names

    def __iter__(self) -> Iterator[str]:
        return iter(self._names())

    def __len__(self) -> int:
        return len(self._names())

    @property
    def unlimited(self) -> tuple[str, ...]:
        return tuple(getattr(self.members[0], "unlimited", ()))

    def __repr__(self):
        return f"{type(self).__name__}({dict(self)!r})"


class SubDimensions(Mapping):
    """Dimensions of a dataset seen through per-dimension indexers."""

    def __init__(self, dimensions: Mapping[str, int], indices: Mapping[str, int | range]):
        self.dimensions = dimensions
        self.indices = indices

    def __getitem__(self, name: str) -> int:
        index = self.indices.get(name)
        if isinstance(index, int):
            raise KeyError(name)
        if index is None:
            return self.dimensions[name]
        return len(index)

    def __iter__(self) -> Iterator[str]:
        return (name for name in self.dimensions if not isinstance(self.indices.get(name), int))

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self):
        return f"{type(self).__name__}({dict(self)!r})"
