"""
Block I/O on NetCDF files through the netCDF4 library.

This is the only module that talks to netCDF4. Everything above it sees a
file handle, an entity identifier (a ``netCDF4.Group`` or
``netCDF4.Variable``) and numpy blocks addressed by start/count/stride.
Automatic masking and scaling is switched off on every handle; the CF
transform lives in `ncvirtual.variable`.
"""

import posixpath
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import netCDF4
import numpy as np

from ncvirtual.errors import RangeError, ResourceError

# ncvirtual mode -> netCDF4 mode
MODES = {
    "r": "r",  # read-only
    "a": "a",  # write into an existing file
    "w": "w",  # create (clobbers an existing file)
}

# netCDF-C is not thread-safe: open, close and block I/O hold this lock.
NC_LOCK = threading.RLock()


def open_handle(filename: Path | str, mode: str = "r") -> netCDF4.Dataset:
    """
    Open a NetCDF file.

    Parameters
    ----------
    filename : Path or str
        Path to the file.
    mode : {"r", "a", "w"}
        Read-only, write into an existing file, or create a new file.

    Returns
    -------
    netCDF4.Dataset
        Open handle with automatic mask/scale disabled.

    Raises
    ------
    ResourceError
        If the file cannot be opened.
    """
    if mode not in MODES:
        raise ValueError(f"Unknown mode {mode!r}, expected one of {sorted(MODES)}")
    try:
        with NC_LOCK:
            handle = netCDF4.Dataset(str(filename), mode=MODES[mode])
            handle.set_auto_maskandscale(False)
    except (OSError, RuntimeError) as err:
        raise ResourceError(f"Cannot open {filename} (mode={mode!r}): {err}") from err
    return handle


def close_handle(handle: netCDF4.Dataset) -> None:
    """Close a handle returned by `open_handle`."""
    try:
        with NC_LOCK:
            handle.close()
    except (OSError, RuntimeError) as err:
        raise ResourceError(f"Cannot close {handle.filepath()}: {err}") from err


def is_open(handle: netCDF4.Dataset) -> bool:
    return bool(handle.isopen())


def join_path(group_path: str, name: str) -> str:
    """Absolute path of ``name`` inside the group at ``group_path``."""
    return posixpath.join(group_path or "/", name)


def entity_path(entity: netCDF4.Group | netCDF4.Variable) -> str:
    if isinstance(entity, netCDF4.Variable):
        return join_path(entity.group().path, entity.name)
    return entity.path


def resolve(handle: netCDF4.Dataset, path: str) -> netCDF4.Group | netCDF4.Variable:
    """
    Locate a group or variable by its path inside an open file.

    Raises
    ------
    ResourceError
        If nothing exists at ``path``.
    """
    relative = path.strip("/")
    if not relative:
        return handle
    try:
        return handle[relative]
    except (KeyError, IndexError) as err:
        raise ResourceError(f"{path!r} not found in {handle.filepath()}") from err


def list_dimensions(group: netCDF4.Group) -> list[tuple[str, int]]:
    return [(name, len(dim)) for name, dim in group.dimensions.items()]


def unlimited_dimensions(group: netCDF4.Group) -> list[str]:
    return [name for name, dim in group.dimensions.items() if dim.isunlimited()]


def list_attributes(entity: netCDF4.Group | netCDF4.Variable) -> list[tuple[str, Any]]:
    return [(name, entity.getncattr(name)) for name in entity.ncattrs()]


def set_attr(entity: netCDF4.Group | netCDF4.Variable, name: str, value: Any) -> None:
    try:
        entity.setncattr(name, value)
    except (OSError, RuntimeError, AttributeError) as err:
        raise ResourceError(
            f"Cannot set attribute {name!r} on {entity_path(entity)}: {err}"
        ) from err


def del_attr(entity: netCDF4.Group | netCDF4.Variable, name: str) -> None:
    try:
        entity.delncattr(name)
    except (OSError, RuntimeError, AttributeError) as err:
        raise ResourceError(
            f"Cannot delete attribute {name!r} on {entity_path(entity)}: {err}"
        ) from err


def create_dimension(group: netCDF4.Group, name: str, size: int | None) -> None:
    try:
        group.createDimension(name, size)
    except (OSError, RuntimeError) as err:
        raise ResourceError(f"Cannot create dimension {name!r} in {group.path}: {err}") from err


def create_group(group: netCDF4.Group, name: str) -> netCDF4.Group:
    try:
        child = group.createGroup(name)
    except (OSError, RuntimeError) as err:
        raise ResourceError(f"Cannot create group {name!r} in {group.path}: {err}") from err
    child.set_auto_maskandscale(False)
    return child


def create_variable(
    group: netCDF4.Group,
    name: str,
    dtype: Any,
    dimensions: Sequence[str],
    fill_value: Any = None,
    attrs: dict[str, Any] | None = None,
    **kwargs,
) -> netCDF4.Variable:
    """Define a variable; automatic mask/scale is disabled on it as on open handles."""
    try:
        var = group.createVariable(name, dtype, tuple(dimensions), fill_value=fill_value, **kwargs)
        var.set_auto_maskandscale(False)
        if attrs:
            var.setncatts(attrs)
    except (OSError, RuntimeError) as err:
        raise ResourceError(f"Cannot create variable {name!r} in {group.path}: {err}") from err
    return var


def entity_dtype(var: netCDF4.Variable) -> np.dtype:
    """Numpy dtype of a variable; variable-length strings map to object."""
    if var.dtype is str:
        return np.dtype(object)
    return np.dtype(var.dtype)


def _slices(start: Sequence[int], count: Sequence[int], stride: Sequence[int]):
    return tuple(
        slice(s, s + (c - 1) * st + 1, st) for s, c, st in zip(start, count, stride)
    )


def _describe(start, count, stride) -> str:
    return f"(start={tuple(start)}, count={tuple(count)}, stride={tuple(stride)})"


def read_block(
    var: netCDF4.Variable,
    start: Sequence[int],
    count: Sequence[int],
    stride: Sequence[int] | None = None,
) -> np.ndarray:
    """
    Read a strided rectangular block of stored values.

    Returns
    -------
    np.ndarray
        Array of shape ``count`` holding the values exactly as stored.
    """
    count = tuple(int(c) for c in count)
    if stride is None:
        stride = (1,) * len(count)
    if any(c == 0 for c in count):
        return np.empty(count, dtype=entity_dtype(var))
    try:
        with NC_LOCK:
            if var.ndim == 0:
                data = var.getValue()
            else:
                data = var[_slices(start, count, stride)]
    except IndexError as err:
        raise RangeError(f"{entity_path(var)} {_describe(start, count, stride)}: {err}") from err
    except (OSError, RuntimeError) as err:
        raise ResourceError(
            f"Cannot read {entity_path(var)} {_describe(start, count, stride)}: {err}"
        ) from err
    return np.asarray(data).reshape(count)


def write_block(
    var: netCDF4.Variable,
    start: Sequence[int],
    count: Sequence[int],
    data: np.ndarray,
    stride: Sequence[int] | None = None,
) -> None:
    """Write a strided rectangular block of stored values."""
    count = tuple(int(c) for c in count)
    if stride is None:
        stride = (1,) * len(count)
    if any(c == 0 for c in count):
        return
    try:
        with NC_LOCK:
            if var.ndim == 0:
                var.assignValue(np.asarray(data).reshape(()))
            else:
                var[_slices(start, count, stride)] = data
    except IndexError as err:
        raise RangeError(f"{entity_path(var)} {_describe(start, count, stride)}: {err}") from err
    except (OSError, RuntimeError) as err:
        raise ResourceError(
            f"Cannot write {entity_path(var)} {_describe(start, count, stride)}: {err}"
        ) from err


def snapshot(group: netCDF4.Group) -> dict[str, Any]:
    """
    Capture the metadata of a group and everything below it.

    The result holds no reference to the handle and stays valid after the
    file is closed.
    """
    return {
        "path": group.path,
        "dimensions": dict(list_dimensions(group)),
        "unlimited": unlimited_dimensions(group),
        "attributes": dict(list_attributes(group)),
        "variables": {
            name: {
                "dimensions": tuple(var.dimensions),
                "shape": tuple(int(n) for n in var.shape),
                "dtype": entity_dtype(var),
                "attributes": dict(list_attributes(var)),
            }
            for name, var in group.variables.items()
        },
        "groups": {name: snapshot(child) for name, child in group.groups.items()},
    }


def unlimited_axes(var: netCDF4.Variable) -> tuple[int, ...]:
    """Axes of ``var`` along unlimited dimensions."""
    return tuple(axis for axis, dim in enumerate(var.get_dims()) if dim.isunlimited())
