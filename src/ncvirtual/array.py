"""
The array-like abstraction shared by every variable kind.

Raw, CF-transformed, deferred, aggregated variables and index views all
expose the same small capability set: ``name``, ``dimensions``, ``shape``,
``dtype``, ``attrs`` and block ``read``/``write``. Code that composes
variables relies on nothing else. `ArrayMixin` adds numpy-style indexing on
top of ``read``/``write``.
"""

import math
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import numpy as np
import xarray as xr

from ncvirtual.indexing import broadcast_block, normalize_key, to_block


@runtime_checkable
class ArrayLike(Protocol):
    name: str
    dimensions: tuple[str, ...]
    attrs: Mapping[str, Any]

    @property
    def shape(self) -> tuple[int, ...]: ...

    @property
    def dtype(self) -> np.dtype: ...

    def read(
        self,
        start: Sequence[int] | None = None,
        count: Sequence[int] | None = None,
        stride: Sequence[int] | None = None,
    ) -> np.ndarray: ...

    def write(
        self,
        start: Sequence[int],
        count: Sequence[int],
        values: Any,
        stride: Sequence[int] | None = None,
    ) -> None: ...


class ArrayMixin:
    """
    Numpy-style indexing for classes implementing `ArrayLike`.

    Integer positions drop their dimension from the result, slices keep it.
    Only positive slice steps are supported.
    """

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return math.prod(self.shape)

    def __len__(self) -> int:
        if not self.shape:
            raise TypeError("len() of unsized object")
        return self.shape[0]

    def __getitem__(self, key):
        spec = normalize_key(key, self.shape, self.name)
        (start, count, stride), points = to_block(spec)
        data = self.read(start, count, stride)
        if points:
            data = np.squeeze(data, axis=points)
        if data.ndim == 0:
            return data[()]
        return data

    def _growable_axes(self) -> tuple[int, ...]:
        """Axes that a write may extend past their current length."""
        return ()

    def __setitem__(self, key, values) -> None:
        spec = normalize_key(key, self.shape, self.name, growable=self._growable_axes())
        (start, count, stride), points = to_block(spec)
        reduced = tuple(c for axis, c in enumerate(count) if axis not in points)
        block = broadcast_block(values, reduced).reshape(count)
        self.write(start, count, block, stride)

    def __array__(self, dtype=None, copy=None):
        return np.asarray(self[...], dtype=dtype)

    def view(self, key: Any = Ellipsis):
        """
        Lazy rectangular subset of this array.

        Parameters
        ----------
        key : int, slice, Ellipsis or tuple of those
            Numpy-style selection.

        Returns
        -------
        SubVariable
            A view; no data is read until it is indexed.
        """
        from ncvirtual.views import SubVariable

        return SubVariable(self, key)

    def isel(self, **indexers):
        """Lazy subset selected by dimension name, e.g. ``var.isel(time=0)``."""
        unknown = set(indexers) - set(self.dimensions)
        if unknown:
            raise ValueError(f"{self.name}: unknown dimensions {sorted(unknown)}")
        key = tuple(indexers.get(dim, slice(None)) for dim in self.dimensions)
        return self.view(key)

    def to_xarray(self) -> xr.DataArray:
        """
        Read the whole array into an xarray DataArray.

        Missing values of masked integer data become NaN.
        """
        return xr.DataArray(
            self[...], dims=self.dimensions, name=self.name, attrs=dict(self.attrs)
        )

    def __repr__(self):
        return (
            f"<{type(self).__name__} {self.name!r} dims={self.dimensions} "
            f"shape={self.shape} dtype={self.dtype}>"
        )
