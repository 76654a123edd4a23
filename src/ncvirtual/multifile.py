"""
Multi-file aggregation.

An `MFDataset` joins datasets that share every dimension except one, the
aggregation dimension. In concatenation mode the aggregation dimension
already exists in every member and the members' runs are laid end to end;
in stacking mode it is a new leading dimension and each member contributes
one slice. Variables are routed lazily: a read only touches (and, for
deferred members, only opens) the members covering the request.
"""

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from itertools import accumulate

import numpy as np
import pandas as pd
import structlog

from ncvirtual.array import ArrayLike, ArrayMixin
from ncvirtual.attributes import MFAttributes, MFDimensions
from ncvirtual.config import mask_and_scale, max_workers
from ncvirtual.dataset import DatasetMixin
from ncvirtual.errors import StructureError
from ncvirtual.indexing import broadcast_block, check_range
from ncvirtual.variable import CFVariable

log = structlog.get_logger()


def _label(member, index: int) -> str:
    name = getattr(member, "label", None) or getattr(member, "filename", None)
    return f"member {index} ({name})" if name else f"member {index}"


class MFVariable(ArrayMixin):
    """
    A variable concatenated or stacked from per-member variables.

    Parameters
    ----------
    members : sequence of ArrayLike
        Per-member variables, in aggregation order.
    aggdim : str
        Name of the aggregation dimension.
    isnewdim : bool, default False
        Stack along a new leading dimension instead of concatenating along
        an existing one.
    attrs : Mapping, optional
        Attribute mapping; defaults to `MFAttributes` over the members.

    Raises
    ------
    StructureError
        If the members disagree on dimensions or on their extent along any
        dimension other than the aggregation dimension.
    """

    def __init__(
        self,
        members: Sequence[ArrayLike],
        aggdim: str,
        isnewdim: bool = False,
        *,
        attrs=None,
    ):
        if not members:
            raise StructureError(f"Cannot aggregate {aggdim!r} over zero members")
        self.members = list(members)
        self.aggdim = aggdim
        self.isnewdim = isnewdim

        first = self.members[0]
        self.name = first.name
        if isnewdim:
            self.axis = 0
            self.dimensions = (aggdim, *first.dimensions)
            self.extents = [1] * len(self.members)
        else:
            if aggdim not in first.dimensions:
                raise StructureError(f"{self.name}: no dimension {aggdim!r} to aggregate along")
            self.axis = first.dimensions.index(aggdim)
            self.dimensions = tuple(first.dimensions)
            self.extents = [m.shape[self.axis] for m in self.members]
        self._check_members()
        self.offsets = [0, *accumulate(self.extents)]
        self.attrs = attrs if attrs is not None else MFAttributes([m.attrs for m in self.members])

    def _check_members(self):
        first = self.members[0]
        reference = self._fixed_shape(first)
        for i, member in enumerate(self.members[1:], 1):
            if tuple(member.dimensions) != tuple(first.dimensions):
                raise StructureError(
                    f"{self.name}: {_label(member, i)} has dimensions {member.dimensions}, "
                    f"expected {first.dimensions}"
                )
            if self._fixed_shape(member) != reference:
                raise StructureError(
                    f"{self.name}: {_label(member, i)} has shape {member.shape}, "
                    f"expected {first.shape} outside {self.aggdim!r}"
                )

    def _fixed_shape(self, member) -> tuple[int, ...]:
        shape = list(member.shape)
        if not self.isnewdim:
            del shape[self.axis]
        return tuple(shape)

    @property
    def shape(self) -> tuple[int, ...]:
        shape = list(self.members[0].shape)
        if self.isnewdim:
            shape.insert(0, self.offsets[-1])
        else:
            shape[self.axis] = self.offsets[-1]
        return tuple(shape)

    @property
    def dtype(self) -> np.dtype:
        return np.result_type(*(m.dtype for m in self.members))

    def _route(self, start, count, stride):
        """
        Members intersecting a request along the aggregation axis.

        Yields ``(member, k0, k1, local)``: elements ``k0:k1`` of the request
        come from ``member``, starting at its local index ``local``.
        """
        first, n, step = start[self.axis], count[self.axis], stride[self.axis]
        for i, (lo, hi) in enumerate(zip(self.offsets[:-1], self.offsets[1:])):
            k0 = max(0, -(-(lo - first) // step))
            k1 = min(n, -(-(hi - first) // step))
            if k1 > k0:
                yield i, k0, k1, first + k0 * step - lo

    def _member_block(self, start, count, stride, k0, k1, local):
        start, count, stride = list(start), list(count), list(stride)
        if self.isnewdim:
            del start[0], count[0], stride[0]
        else:
            start[self.axis] = local
            count[self.axis] = k1 - k0
        return tuple(start), tuple(count), tuple(stride)

    def read(self, start=None, count=None, stride=None) -> np.ndarray:
        start, count, stride = check_range(self.shape, start, count, stride, name=self.name)
        parts = list(self._route(start, count, stride))
        if not parts:
            return np.empty(count, dtype=self.dtype)
        log.debug(
            "Reading aggregated variable",
            variable=self.name,
            members=[i for i, *_ in parts],
        )

        def fetch(part):
            i, k0, k1, local = part
            block = self._member_block(start, count, stride, k0, k1, local)
            data = self.members[i].read(*block)
            if self.isnewdim:
                data = np.expand_dims(data, 0)
            return data

        workers = max_workers()
        if workers > 1 and len(parts) > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                pieces = list(pool.map(fetch, parts))
        else:
            pieces = [fetch(part) for part in parts]

        if any(np.ma.isMaskedArray(piece) for piece in pieces):
            return np.ma.concatenate(pieces, axis=self.axis)
        return np.concatenate(pieces, axis=self.axis)

    def write(self, start, count, values, stride=None) -> None:
        """
        Split ``values`` along the aggregation axis and write each piece to
        its member.

        Members are written in order. If one fails, the error is logged and
        re-raised; members written before it keep the new values.
        """
        start, count, stride = check_range(self.shape, start, count, stride, name=self.name)
        block = broadcast_block(values, count)
        written = []
        for i, k0, k1, local in self._route(start, count, stride):
            mstart, mcount, mstride = self._member_block(start, count, stride, k0, k1, local)
            piece = block[(slice(None),) * self.axis + (slice(k0, k1),)].reshape(mcount)
            try:
                self.members[i].write(mstart, mcount, piece, mstride)
            except Exception:
                log.error(
                    "Aggregated write failed part-way",
                    variable=self.name,
                    member=_label(self.members[i], i),
                    written=written,
                )
                raise
            written.append(i)


class MFDataset(DatasetMixin):
    """
    Datasets aggregated along one dimension.

    Parameters
    ----------
    members : sequence of datasets
        `Dataset`, `DeferDataset` (or any dataset) in aggregation order.
    aggdim : str
        The aggregation dimension.
    isnewdim : bool, default False
        Stack members along a new leading dimension ``aggdim``.
    constvars : sequence of str, optional
        Variables identical in every member; they are read from the first
        member only. In concatenation mode, variables without ``aggdim``
        are treated the same way.
    maskandscale : bool, optional
        Whether ``ds[name]`` applies the CF transform.

    Raises
    ------
    StructureError
        If a member disagrees with the first one on any dimension other
        than ``aggdim``.

    Examples
    --------
    >>> members = [DeferDataset(Resource.from_file(f)) for f in files]
    >>> mf = MFDataset(members, "time")
    >>> mf["sst"][8:18]
    """

    def __init__(
        self,
        members: Sequence,
        aggdim: str,
        isnewdim: bool = False,
        constvars: Sequence[str] = (),
        *,
        maskandscale: bool | None = None,
        _root: bool = True,
    ):
        self.members = list(members)
        if not self.members:
            raise StructureError("An aggregation needs at least one member")
        self.aggdim = aggdim
        self.isnewdim = isnewdim
        self.constvars = tuple(constvars)
        self.maskandscale = mask_and_scale(maskandscale)
        self._validate(require_aggdim=_root)

        first = self.members[0]
        self.path = first.path
        self.attrs = MFAttributes([m.attrs for m in self.members])
        self.dimensions = MFDimensions(
            [m.dimensions for m in self.members], aggdim, isnewdim and _root
        )
        self._boundsmap = None if self.iswritable else dict(first.bounds_map)
        if _root:
            log.info(
                "Aggregated dataset",
                members=len(self.members),
                aggdim=aggdim,
                isnewdim=isnewdim,
                length=self.dimensions[aggdim],
            )

    def _validate(self, require_aggdim: bool) -> None:
        first = self.members[0]
        reference = dict(first.dimensions)
        if self.isnewdim and self.aggdim in reference:
            raise StructureError(
                f"Cannot stack along {self.aggdim!r}: it already exists in {_label(first, 0)}"
            )
        if not self.isnewdim and require_aggdim and self.aggdim not in reference:
            raise StructureError(f"{_label(first, 0)} has no dimension {self.aggdim!r}")

        for i, member in enumerate(self.members[1:], 1):
            dims = dict(member.dimensions)
            for name, length in reference.items():
                if name not in dims:
                    raise StructureError(f"{_label(member, i)} lacks dimension {name!r}")
                if name == self.aggdim:
                    continue
                if dims[name] != length:
                    raise StructureError(
                        f"{_label(member, i)}: dimension {name!r} has length {dims[name]}, "
                        f"expected {length} as in {_label(first, 0)}"
                    )
            extra = sorted(set(dims) - set(reference))
            if extra:
                raise StructureError(f"{_label(member, i)} has unexpected dimensions {extra}")

    @property
    def filenames(self) -> list[str | None]:
        return [getattr(m, "filename", None) for m in self.members]

    @property
    def iswritable(self) -> bool:
        return all(m.iswritable for m in self.members)

    @property
    def groups(self) -> dict[str, "MFDataset"]:
        groups = {}
        for name in self.members[0].groups:
            try:
                members = [m.groups[name] for m in self.members]
            except KeyError:
                raise StructureError(f"Group {name!r} is missing from some members") from None
            groups[name] = MFDataset(
                members,
                self.aggdim,
                self.isnewdim,
                self.constvars,
                maskandscale=self.maskandscale,
                _root=False,
            )
        return groups

    @property
    def variable_names(self) -> tuple[str, ...]:
        return self.members[0].variable_names

    def is_constant(self, name: str) -> bool:
        """Whether ``name`` is read from the first member only."""
        if name in self.constvars:
            return True
        return not self.isnewdim and self.aggdim not in self.members[0].variable(name).dimensions

    def variable(self, name: str):
        """The stored (untransformed) aggregated variable ``name``."""
        if self.is_constant(name):
            return self.members[0].variable(name)
        return MFVariable([m.variable(name) for m in self.members], self.aggdim, self.isnewdim)

    def _cf_variable(self, name: str):
        if self.is_constant(name):
            return CFVariable(self.members[0].variable(name))
        members = [CFVariable(m.variable(name)) for m in self.members]
        return MFVariable(members, self.aggdim, self.isnewdim)

    def members_frame(self) -> pd.DataFrame:
        """
        One row per member with its file, offset and extent along ``aggdim``.
        """
        if self.isnewdim:
            extents = [1] * len(self.members)
        else:
            extents = [m.dimensions[self.aggdim] for m in self.members]
        return pd.DataFrame(
            {
                "filename": self.filenames,
                "offset": [0, *accumulate(extents)][:-1],
                "extent": extents,
            }
        )

    def close(self) -> None:
        for member in self.members:
            member.close()


def sort_members(members: Sequence, by: str) -> list:
    """
    Order datasets by the first value of a coordinate variable.

    Parameters
    ----------
    members : sequence of datasets
        Datasets to order.
    by : str
        Variable whose first element is the sort key, typically ``"time"``.

    Returns
    -------
    list
        The datasets in ascending key order; ties keep their input order.
    """
    members = list(members)
    frame = pd.DataFrame({"key": [_first_value(m[by]) for m in members]})
    return [members[i] for i in frame.sort_values("key", kind="stable").index]


def _first_value(var):
    if var.size == 0:
        return np.nan
    value = var.read((0,) * var.ndim, (1,) * var.ndim).ravel()[0]
    return np.nan if value is np.ma.masked else value
