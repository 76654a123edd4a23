"""
Index views: rectangular subsets of arrays and datasets without copying.
"""

from collections.abc import Mapping

import numpy as np

from ncvirtual.array import ArrayLike, ArrayMixin
from ncvirtual.attributes import SubDimensions
from ncvirtual.dataset import DatasetMixin
from ncvirtual.indexing import broadcast_block, check_range, compose, normalize_key


class SubVariable(ArrayMixin):
    """
    A view of part of another array-like.

    The view stores one ``int`` (single position, dimension dropped) or
    ``range`` per parent dimension and translates its own block requests
    into parent coordinates. A view of a view is collapsed into a view of
    the root parent, so any nesting costs a single translation.

    Parameters
    ----------
    parent : ArrayLike
        The array being viewed.
    key : int, slice, Ellipsis or tuple of those
        Numpy-style selection, checked against the parent's current shape.
    """

    def __init__(self, parent: ArrayLike, key=Ellipsis):
        indices = normalize_key(key, parent.shape, parent.name)
        if isinstance(parent, SubVariable):
            indices = compose(parent.indices, indices)
            parent = parent.parent
        self.parent = parent
        self.indices = indices

    @property
    def name(self) -> str:
        return self.parent.name

    @property
    def attrs(self):
        return self.parent.attrs

    @property
    def dtype(self) -> np.dtype:
        return self.parent.dtype

    @property
    def dimensions(self) -> tuple[str, ...]:
        return tuple(
            dim for dim, r in zip(self.parent.dimensions, self.indices) if isinstance(r, range)
        )

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(len(r) for r in self.indices if isinstance(r, range))

    def _parent_block(self, start, count, stride):
        start, count, stride = check_range(self.shape, start, count, stride, name=self.name)
        local = iter(zip(start, count, stride))
        pstart, pcount, pstride = [], [], []
        for r in self.indices:
            if isinstance(r, int):
                pstart.append(r)
                pcount.append(1)
                pstride.append(1)
            else:
                s, c, st = next(local)
                pstart.append(r.start + s * r.step)
                pcount.append(c)
                pstride.append(r.step * st)
        return (tuple(pstart), tuple(pcount), tuple(pstride)), count

    def read(self, start=None, count=None, stride=None) -> np.ndarray:
        (pstart, pcount, pstride), count = self._parent_block(start, count, stride)
        return self.parent.read(pstart, pcount, pstride).reshape(count)

    def write(self, start, count, values, stride=None) -> None:
        (pstart, pcount, pstride), count = self._parent_block(start, count, stride)
        block = broadcast_block(values, count).reshape(pcount)
        self.parent.write(pstart, pcount, block, pstride)


def _as_key(index: int | range) -> int | slice:
    if isinstance(index, int):
        return index
    return slice(index.start, index.stop, index.step)


class SubDataset(DatasetMixin):
    """
    A dataset seen through per-dimension indexers.

    Every variable (and every variable of every group) that uses an indexed
    dimension is returned as a `SubVariable`.

    Parameters
    ----------
    dataset : Dataset, DeferDataset, MFDataset or SubDataset
        The dataset being viewed.
    indices : Mapping[str, int | range]
        Normalised indexer per dimension name, as built by
        ``DatasetMixin.isel``.
    """

    def __init__(self, dataset, indices: Mapping[str, int | range]):
        self.dataset = dataset
        self.indices = dict(indices)
        self.dimensions = SubDimensions(dataset.dimensions, self.indices)
        self.attrs = dataset.attrs
        self.maskandscale = dataset.maskandscale
        self.path = dataset.path
        self._boundsmap = None

    @property
    def iswritable(self) -> bool:
        return self.dataset.iswritable

    @property
    def groups(self) -> dict[str, "SubDataset"]:
        return {
            name: SubDataset(group, self.indices)
            for name, group in self.dataset.groups.items()
        }

    @property
    def variable_names(self) -> tuple[str, ...]:
        return self.dataset.variable_names

    def _subset(self, var) -> SubVariable:
        key = tuple(
            _as_key(self.indices.get(dim, range(n)))
            for dim, n in zip(var.dimensions, var.shape)
        )
        return SubVariable(var, key)

    def variable(self, name: str) -> SubVariable:
        return self._subset(self.dataset.variable(name))

    def _cf_variable(self, name: str) -> SubVariable:
        return self._subset(self.dataset._cf_variable(name))

    def close(self) -> None:
        self.dataset.close()
