"""
Single-file datasets.

A `Dataset` owns one open netCDF4 handle. Its groups, variables and
attributes share that handle and keep it alive; ``close()`` (or leaving a
``with`` block) releases it, after which every access raises
`ResourceError`.
"""

from pathlib import Path
from typing import Any

import xarray as xr

from ncvirtual import backend
from ncvirtual.attributes import Attributes, Dimensions
from ncvirtual.config import mask_and_scale
from ncvirtual.errors import ResourceError
from ncvirtual.indexing import normalize_key
from ncvirtual.variable import CFVariable, Variable


class DatasetMixin:
    """
    Behaviour shared by every dataset kind.

    Subclasses provide ``dimensions``, ``attrs``, ``groups``,
    ``variable_names``, ``variable(name)``, ``maskandscale``,
    ``iswritable``, ``path`` and ``close()``.
    """

    def __getitem__(self, name: str):
        """
        Variable by name, or by path through groups (``"group/var"``).

        Values are CF-transformed unless the dataset was opened with
        ``maskandscale=False``.
        """
        head, sep, tail = name.strip("/").partition("/")
        if sep:
            return self.groups[head][tail]
        if not self.maskandscale:
            return self.variable(name)
        return self._cf_variable(name)

    def _cf_variable(self, name: str):
        return CFVariable(self.variable(name))

    def __contains__(self, name: object) -> bool:
        return name in self.variable_names

    def __iter__(self):
        return iter(self.variable_names)

    def __len__(self) -> int:
        return len(self.variable_names)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def isel(self, **indexers):
        """
        Lazy subset of every variable, selected by dimension name.

        Examples
        --------
        >>> sub = ds.isel(time=slice(0, 10), lat=0)
        >>> sub["temperature"].shape  # (10, nlon)
        """
        from ncvirtual.views import SubDataset

        unknown = set(indexers) - set(self.dimensions)
        if unknown:
            raise ValueError(f"Unknown dimensions {sorted(unknown)}")
        indices = {
            name: normalize_key(key, (self.dimensions[name],), name)[0]
            for name, key in indexers.items()
        }
        return SubDataset(self, indices)

    def _compute_boundsmap(self) -> dict[str, str]:
        boundsmap = {}
        for name in self.variable_names:
            bounds = self.variable(name).attrs.get("bounds")
            if bounds is not None:
                boundsmap[str(bounds)] = name
        return boundsmap

    @property
    def bounds_map(self) -> dict[str, str]:
        """
        Bounds variable name -> name of the coordinate it bounds.

        Computed once at construction for read-only datasets.
        """
        if self._boundsmap is None:
            return self._compute_boundsmap()
        return self._boundsmap

    def bounds(self, name: str):
        """The bounds variable of coordinate ``name``."""
        bounds = self.variable(name).attrs.get("bounds")
        if bounds is None:
            raise KeyError(f"{name!r} has no bounds attribute")
        return self[str(bounds)]

    def to_xarray(self) -> xr.Dataset:
        """
        Read every variable of this group into an xarray Dataset.

        Bounds variables are attached as coordinates.
        """
        ds = xr.Dataset(
            {name: self[name].to_xarray() for name in self.variable_names},
            attrs=dict(self.attrs),
        )
        return ds.set_coords([name for name in self.bounds_map if name in ds])

    def __repr__(self):
        return (
            f"<{type(self).__name__} {self.path!r} dimensions={dict(self.dimensions)} "
            f"variables={list(self.variable_names)}>"
        )


class Dataset(DatasetMixin):
    """
    A NetCDF file (or one of its groups) opened for the lifetime of the object.

    Parameters
    ----------
    filename : Path or str
        Path to the file.
    mode : {"r", "a", "w"}
        Read-only, write into an existing file, or create a new file.
    maskandscale : bool, optional
        Whether ``ds[name]`` applies the CF transform. Defaults to the
        ``cf.mask_and_scale`` configuration value.

    Examples
    --------
    >>> with Dataset("era5.nc") as ds:
    ...     t2m = ds["t2m"][0, :, :]
    """

    def __init__(self, filename: Path | str, mode: str = "r", *, maskandscale: bool | None = None):
        self.filename = str(filename)
        self.mode = mode
        self.maskandscale = mask_and_scale(maskandscale)
        self._handle = backend.open_handle(filename, mode)
        self._root = self
        self._group = self._handle
        self._init_group()

    @classmethod
    def _from_group(cls, parent: "Dataset", group) -> "Dataset":
        ds = cls.__new__(cls)  # Bypass __init__, the handle is shared
        ds.filename = parent.filename
        ds.mode = parent.mode
        ds.maskandscale = parent.maskandscale
        ds._handle = parent._handle
        ds._root = parent._root
        ds._group = group
        ds._init_group()
        return ds

    def _init_group(self):
        self.path = self._group.path
        self.attrs = Attributes(self, self._group)
        self.dimensions = Dimensions(self, self._group)
        self._boundsmap = None if self.iswritable else self._compute_boundsmap()

    @property
    def iswritable(self) -> bool:
        return self.mode != "r"

    @property
    def isopen(self) -> bool:
        return backend.is_open(self._handle)

    def _check_open(self) -> None:
        if not self.isopen:
            raise ResourceError(f"{self.filename} is closed")

    @property
    def groups(self) -> dict[str, "Dataset"]:
        self._check_open()
        return {name: Dataset._from_group(self, group) for name, group in self._group.groups.items()}

    @property
    def variable_names(self) -> tuple[str, ...]:
        self._check_open()
        return tuple(self._group.variables)

    def variable(self, name: str) -> Variable:
        """The stored (untransformed) variable ``name``."""
        self._check_open()
        try:
            ncvar = self._group.variables[name]
        except KeyError:
            raise KeyError(f"{name!r} not found in {self.filename}:{self.path}") from None
        return Variable(self, ncvar)

    def create_dimension(self, name: str, size: int | None = None) -> None:
        """Define a dimension; ``size=None`` makes it unlimited."""
        self._check_open()
        backend.create_dimension(self._group, name, size)

    def create_variable(
        self,
        name: str,
        dtype: Any,
        dimensions: tuple[str, ...] = (),
        *,
        fill_value: Any = None,
        attrs: dict[str, Any] | None = None,
        **kwargs,
    ):
        """
        Define a variable and return it as ``ds[name]`` would.

        Parameters
        ----------
        name : str
            Variable name.
        dtype : numpy dtype or str
            Stored type. ``str`` creates a variable-length string variable.
        dimensions : tuple of str
            Dimension names, slowest varying first.
        fill_value : scalar, optional
            Written as ``_FillValue``.
        attrs : dict, optional
            Further attributes, e.g. ``scale_factor`` and ``add_offset``.
        **kwargs
            Passed to ``netCDF4.Dataset.createVariable`` (compression, chunking).
        """
        self._check_open()
        backend.create_variable(self._group, name, dtype, dimensions, fill_value, attrs, **kwargs)
        return self[name]

    def create_group(self, name: str) -> "Dataset":
        self._check_open()
        return Dataset._from_group(self, backend.create_group(self._group, name))

    def sync(self) -> None:
        self._check_open()
        self._handle.sync()

    def close(self) -> None:
        """Close the file. Groups and variables become unusable."""
        if self.isopen:
            backend.close_handle(self._handle)
