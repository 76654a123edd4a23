"""
Deferred datasets: files opened only for the duration of one access.

A `Resource` captures the metadata of a file once and holds no handle.
`DeferDataset` and `DeferVariable` answer every metadata query from that
snapshot; each data read or write opens the file, resolves the entity,
acts and closes the file again. This keeps the number of open file
descriptors at zero between calls, which is what allows aggregations of
thousands of files.
"""

import posixpath
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import netCDF4
import numpy as np
import structlog

from ncvirtual import backend
from ncvirtual.array import ArrayMixin
from ncvirtual.attributes import DeferAttributes, DeferDimensions
from ncvirtual.config import mask_and_scale
from ncvirtual.dataset import DatasetMixin
from ncvirtual.errors import ResourceError
from ncvirtual.indexing import broadcast_block, check_range

log = structlog.get_logger()


@contextmanager
def _opened(filename: str, mode: str) -> Iterator[netCDF4.Dataset]:
    """
    Open ``filename`` for the duration of a ``with`` block.

    If the block fails, closing is still attempted; a failure to close is
    logged and the original error propagates.
    """
    handle = backend.open_handle(filename, mode)
    log.debug("Opened deferred resource", filename=filename, mode=mode)
    try:
        yield handle
    except BaseException:
        try:
            backend.close_handle(handle)
        except ResourceError as err:
            log.warning(
                "Failed to close resource after a failed access",
                filename=filename,
                error=str(err),
            )
        raise
    backend.close_handle(handle)
    log.debug("Closed deferred resource", filename=filename)


@dataclass(frozen=True)
class Resource:
    """
    A file path, an open mode and a metadata snapshot.

    Parameters
    ----------
    filename : str
        Path to the NetCDF file.
    mode : {"r", "a", "w"}
        Mode the resource was created with.
    metadata : dict
        Snapshot from `ncvirtual.backend.snapshot`.
    """

    filename: str
    mode: str = "r"
    metadata: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_file(cls, filename: Path | str, mode: str = "r") -> "Resource":
        """Open ``filename`` once to capture its metadata, then close it."""
        filename = str(filename)
        with _opened(filename, mode) as handle:
            metadata = backend.snapshot(handle)
        return cls(filename=filename, mode=mode, metadata=metadata)

    @property
    def access_mode(self) -> str:
        """
        Mode used for each access. A file created with ``"w"`` is reopened
        with ``"a"`` so it is not truncated again.
        """
        return "r" if self.mode == "r" else "a"

    @contextmanager
    def acquire(self) -> Iterator[netCDF4.Dataset]:
        """Open the file for one access; it is closed on every exit path."""
        with _opened(self.filename, self.access_mode) as handle:
            yield handle

    def group_metadata(self, path: str) -> dict[str, Any]:
        node = self.metadata
        for part in path.strip("/").split("/"):
            if part:
                try:
                    node = node["groups"][part]
                except KeyError:
                    raise KeyError(f"Group {path!r} not found in {self.filename}") from None
        return node


class DeferVariable(ArrayMixin):
    """
    A stored variable of a deferred file.

    Parameters
    ----------
    resource : Resource
        The file holding the variable.
    path : str
        Path of the variable inside the file.
    metadata : dict
        Snapshot entry of the variable.
    """

    def __init__(self, resource: Resource, path: str, metadata: dict[str, Any]):
        self.resource = resource
        self.path = path
        self.name = posixpath.basename(path)
        self.dimensions = tuple(metadata["dimensions"])
        self.shape = tuple(metadata["shape"])
        self.dtype = np.dtype(metadata["dtype"])
        self.attrs = DeferAttributes(resource, path, metadata["attributes"])

    @property
    def label(self) -> str:
        return f"{self.resource.filename}:{self.path}"

    def read(self, start=None, count=None, stride=None) -> np.ndarray:
        start, count, stride = check_range(self.shape, start, count, stride, name=self.label)
        with self.resource.acquire() as handle:
            var = backend.resolve(handle, self.path)
            return backend.read_block(var, start, count, stride)

    def write(self, start, count, values, stride=None) -> None:
        start, count, stride = check_range(self.shape, start, count, stride, name=self.label)
        block = broadcast_block(values, count)
        with self.resource.acquire() as handle:
            var = backend.resolve(handle, self.path)
            backend.write_block(var, start, count, block, stride)


class DeferDataset(DatasetMixin):
    """
    A group of a deferred file.

    Parameters
    ----------
    resource : Resource
        The file.
    path : str, default "/"
        Group path inside the file.
    maskandscale : bool, optional
        Whether ``ds[name]`` applies the CF transform.

    Examples
    --------
    >>> ds = DeferDataset(Resource.from_file("sst_2001.nc"))
    >>> ds.dimensions["time"]       # no file opened
    >>> ds["sst"][0, :10, :10]      # opened and closed again
    """

    def __init__(self, resource: Resource, path: str = "/", *, maskandscale: bool | None = None):
        self.resource = resource
        self.path = path
        self.maskandscale = mask_and_scale(maskandscale)
        self._metadata = resource.group_metadata(path)
        self.attrs = DeferAttributes(resource, path, self._metadata["attributes"])
        self.dimensions = DeferDimensions(
            self._metadata["dimensions"], self._metadata["unlimited"]
        )
        self._boundsmap = None if self.iswritable else self._compute_boundsmap()

    @property
    def filename(self) -> str:
        return self.resource.filename

    @property
    def iswritable(self) -> bool:
        return self.resource.mode != "r"

    @property
    def groups(self) -> dict[str, "DeferDataset"]:
        return {
            name: DeferDataset(
                self.resource, backend.join_path(self.path, name), maskandscale=self.maskandscale
            )
            for name in self._metadata["groups"]
        }

    @property
    def variable_names(self) -> tuple[str, ...]:
        return tuple(self._metadata["variables"])

    def variable(self, name: str) -> DeferVariable:
        try:
            metadata = self._metadata["variables"][name]
        except KeyError:
            raise KeyError(f"{name!r} not found in {self.filename}:{self.path}") from None
        return DeferVariable(self.resource, backend.join_path(self.path, name), metadata)

    def close(self) -> None:
        """Nothing to release: no handle is held between accesses."""
