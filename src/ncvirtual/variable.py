"""
Stored variables and the CF numeric transform.

`Variable` reads and writes values exactly as they are stored in a file.
`CFVariable` wraps any array-like carrying CF storage attributes
(``_FillValue``, ``missing_value``, ``scale_factor``, ``add_offset``) and
converts between stored and physical values on every access.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from ncvirtual import backend
from ncvirtual.array import ArrayLike, ArrayMixin
from ncvirtual.attributes import Attributes
from ncvirtual.errors import EncodingError, RangeError
from ncvirtual.indexing import broadcast_block, check_range


class Variable(ArrayMixin):
    """
    A variable of an open file, without any CF transformation.

    The variable keeps its dataset, and therefore the file handle, alive.
    Access after the dataset is closed raises `ResourceError`.

    Parameters
    ----------
    dataset : Dataset
        Root or group dataset owning the handle.
    ncvar : netCDF4.Variable
        The underlying variable.
    """

    def __init__(self, dataset, ncvar):
        self.dataset = dataset
        self._ncvar = ncvar
        self.name = ncvar.name
        self.path = backend.entity_path(ncvar)
        self.dimensions = tuple(ncvar.dimensions)
        self.attrs = Attributes(dataset, ncvar)

    @property
    def label(self) -> str:
        return f"{self.dataset.filename}:{self.path}"

    @property
    def shape(self) -> tuple[int, ...]:
        self.dataset._check_open()
        return tuple(int(n) for n in self._ncvar.shape)

    @property
    def dtype(self) -> np.dtype:
        return backend.entity_dtype(self._ncvar)

    def read(self, start=None, count=None, stride=None) -> np.ndarray:
        self.dataset._check_open()
        start, count, stride = check_range(self.shape, start, count, stride, name=self.label)
        return backend.read_block(self._ncvar, start, count, stride)

    def _growable_axes(self) -> tuple[int, ...]:
        self.dataset._check_open()
        return backend.unlimited_axes(self._ncvar)

    def write(self, start, count, values, stride=None) -> None:
        """
        Write stored values.

        Unlimited dimensions grow when the block extends past their end.
        """
        start, count, stride = check_range(
            self.shape,
            start,
            count,
            stride,
            name=self.label,
            growable=self._growable_axes(),
        )
        backend.write_block(self._ncvar, start, count, broadcast_block(values, count), stride)


@dataclass(frozen=True)
class StorageParams:
    """
    CF storage attributes of a variable.

    Attributes
    ----------
    fill_value : scalar or None
        ``_FillValue``; stored elements equal to it are missing.
    missing_values : tuple
        Values of ``missing_value``; also treated as missing.
    scale_factor : scalar or None
        Multiplier applied to stored values.
    add_offset : scalar or None
        Term added after scaling.
    """

    fill_value: Any = None
    missing_values: tuple = ()
    scale_factor: Any = None
    add_offset: Any = None

    @classmethod
    def from_attrs(cls, attrs: Mapping[str, Any]) -> "StorageParams":
        missing = attrs.get("missing_value")
        return cls(
            fill_value=attrs.get("_FillValue"),
            missing_values=tuple(np.atleast_1d(missing).tolist()) if missing is not None else (),
            scale_factor=attrs.get("scale_factor"),
            add_offset=attrs.get("add_offset"),
        )

    @property
    def is_packed(self) -> bool:
        return self.scale_factor is not None or self.add_offset is not None

    @property
    def has_missing(self) -> bool:
        return self.fill_value is not None or bool(self.missing_values)

    @property
    def is_passthrough(self) -> bool:
        return not (self.is_packed or self.has_missing)

    @property
    def missing_marker(self) -> Any:
        """The stored value written for missing elements."""
        if self.fill_value is not None:
            return self.fill_value
        if self.missing_values:
            return self.missing_values[0]
        return None

    def validate(self, stored: np.dtype, name: str = "") -> None:
        if self.is_packed and stored.kind not in "iuf":
            raise EncodingError(f"{name}: cannot apply scale_factor/add_offset to {stored} data")

    def unpacked_dtype(self, stored: np.dtype) -> np.dtype:
        """
        Type of physical values for a given stored type.

        Unpacked values take the floating type of ``scale_factor`` and
        ``add_offset``. Integer packing attributes give float32 for one and
        two byte integers and float64 otherwise.
        """
        stored = np.dtype(stored)
        if not self.is_packed:
            return stored
        params = [np.asarray(v).dtype for v in (self.scale_factor, self.add_offset) if v is not None]
        floats = [dtype for dtype in params if dtype.kind == "f"]
        if stored.kind == "f":
            floats.append(stored)
        if floats:
            return np.result_type(*floats)
        return np.dtype("float32") if stored.itemsize <= 2 else np.dtype("float64")

    def missing_mask(self, raw: np.ndarray) -> np.ndarray:
        """Elements of ``raw`` equal (exactly) to the fill or a missing value."""
        mask = np.zeros(raw.shape, dtype=bool)
        for value in (self.fill_value, *self.missing_values):
            if value is None:
                continue
            value = np.asarray(value)
            if raw.dtype.kind == "f" and value.dtype.kind == "f" and np.isnan(value):
                mask |= np.isnan(raw)
            else:
                mask |= raw == value.astype(raw.dtype)
        return mask

    def decode(self, raw: np.ndarray) -> np.ndarray:
        """
        Convert stored values to physical values.

        Missing elements become NaN for floating output and are masked
        (``numpy.ma``) otherwise.
        """
        if self.is_passthrough:
            return raw
        mask = self.missing_mask(raw) if self.has_missing else None

        if self.is_packed:
            dtype = self.unpacked_dtype(raw.dtype)
            data = raw.astype(dtype)
            if self.scale_factor is not None:
                data *= np.asarray(self.scale_factor).astype(dtype)
            if self.add_offset is not None:
                data += np.asarray(self.add_offset).astype(dtype)
        else:
            data = raw

        if mask is not None:
            if data.dtype.kind == "f":
                data[mask] = np.nan
            else:
                data = np.ma.MaskedArray(data, mask=mask)
        return data

    def encode(self, values: Any, stored: np.dtype, name: str = "") -> np.ndarray:
        """
        Convert physical values to stored values.

        Masked elements are missing. NaN is missing too when the variable
        has a fill or missing value, or when the stored type is an integer;
        otherwise it is written as an ordinary floating value.

        Raises
        ------
        EncodingError
            If a value is missing and there is no fill value.
        RangeError
            If a packed value does not fit the stored integer type.
        """
        stored = np.dtype(stored)
        mask = np.ma.getmaskarray(values)
        data = np.asarray(np.ma.getdata(values))
        if data.dtype.kind == "f" and (self.missing_marker is not None or stored.kind != "f"):
            mask = mask | np.isnan(data)

        has_missing = bool(mask.any())
        if has_missing and self.missing_marker is None:
            raise EncodingError(f"{name}: missing values written but no _FillValue is defined")

        if stored.kind in "iu":
            if self.is_packed or data.dtype.kind not in "iub":
                work = data.astype(np.float64)
                if self.add_offset is not None:
                    work = work - float(self.add_offset)
                if self.scale_factor is not None:
                    work = work / float(self.scale_factor)
                work = np.rint(np.where(mask, 0, work))
            else:
                work = np.where(mask, 0, data)
            self._check_fits(work[~mask], stored, name)
            out = work.astype(stored)
        elif stored.kind == "f":
            work = data.astype(np.float64) if self.is_packed else data
            if self.add_offset is not None:
                work = work - float(self.add_offset)
            if self.scale_factor is not None:
                work = work / float(self.scale_factor)
            out = np.array(work, dtype=stored)
        else:
            out = np.array(data, dtype=stored)

        if has_missing:
            out[mask] = np.asarray(self.missing_marker).astype(stored)
        return out

    @staticmethod
    def _check_fits(values: np.ndarray, stored: np.dtype, name: str) -> None:
        if not values.size:
            return
        info = np.iinfo(stored)
        lo, hi = values.min(), values.max()
        if lo < info.min or hi > info.max:
            raise RangeError(
                f"{name}: values in [{lo}, {hi}] overflow stored type {stored} "
                f"[{info.min}, {info.max}]"
            )


class CFVariable(ArrayMixin):
    """
    Physical-value view of a stored variable.

    Storage attributes are captured once, when the wrapper is built. A
    variable without any of them is passed through unchanged: same dtype,
    bit-identical values.

    Parameters
    ----------
    var : ArrayLike
        Stored variable (`Variable`, `DeferVariable`, ...).
    """

    def __init__(self, var: ArrayLike):
        self.var = var
        self.storage = StorageParams.from_attrs(var.attrs)
        self.storage.validate(var.dtype, var.name)

    @property
    def name(self) -> str:
        return self.var.name

    @property
    def label(self) -> str:
        return getattr(self.var, "label", self.name)

    @property
    def dimensions(self) -> tuple[str, ...]:
        return self.var.dimensions

    @property
    def attrs(self):
        return self.var.attrs

    @property
    def shape(self) -> tuple[int, ...]:
        return self.var.shape

    @property
    def dtype(self) -> np.dtype:
        return self.storage.unpacked_dtype(self.var.dtype)

    def _growable_axes(self) -> tuple[int, ...]:
        return self.var._growable_axes()

    def read(
        self,
        start: Sequence[int] | None = None,
        count: Sequence[int] | None = None,
        stride: Sequence[int] | None = None,
    ) -> np.ndarray:
        return self.storage.decode(self.var.read(start, count, stride))

    def write(self, start, count, values, stride=None) -> None:
        block = broadcast_block(values, count)
        self.var.write(start, count, self.storage.encode(block, self.var.dtype, self.name), stride)
