"""
Index expressions and block ranges.

An index expression is a tuple with one entry per dimension: an ``int``
selects a single position and drops the dimension, a ``range`` selects a
strided run. Python ranges compose exactly (``range(2, 20, 3)[1:4]`` is
``range(5, 14, 3)``), which is what makes a view of a view collapse into a
single view of the root array.
"""

import math
from collections.abc import Sequence
from typing import Any

import numpy as np

from ncvirtual.errors import RangeError

Block = tuple[tuple[int, ...], tuple[int, ...], tuple[int, ...]]


def normalize_key(
    key: Any,
    shape: Sequence[int],
    name: str = "",
    *,
    growable: Sequence[int] = (),
) -> tuple[int | range, ...]:
    """
    Convert a numpy-style key into an index expression.

    Parameters
    ----------
    key : int, slice, Ellipsis or tuple of those
        The requested selection.
    shape : sequence of int
        Shape of the array being indexed.
    name : str, optional
        Used in error messages.
    growable : sequence of int, optional
        Axes that may be extended by a write (unlimited dimensions). On
        these axes a slice stop or a non-negative integer past the current
        length is kept instead of clipped.

    Returns
    -------
    tuple of int or range
        One entry per dimension of ``shape``.

    Raises
    ------
    RangeError
        If an integer is out of bounds, a slice step is not positive, or
        there are more indices than dimensions.
    TypeError
        For unsupported key types (boolean or integer arrays).
    """
    if not isinstance(key, tuple):
        key = (key,)

    n_ellipsis = sum(k is Ellipsis for k in key)
    if n_ellipsis > 1:
        raise RangeError(f"{name}: an index can only have a single ellipsis")
    if n_ellipsis:
        pos = key.index(Ellipsis)
        fill = (slice(None),) * (len(shape) - len(key) + 1)
        key = key[:pos] + fill + key[pos + 1 :]
    if len(key) > len(shape):
        raise RangeError(
            f"{name}: too many indices ({len(key)}) for array of rank {len(shape)}"
        )
    key = key + (slice(None),) * (len(shape) - len(key))

    spec = []
    for axis, (k, n) in enumerate(zip(key, shape)):
        grows = axis in growable
        if isinstance(k, slice):
            if grows and k.stop is not None and k.stop > n:
                n = k.stop
            start, stop, step = k.indices(n)
            if step <= 0:
                raise RangeError(f"{name}: slice step must be positive, got {step}")
            spec.append(range(start, stop, step))
        elif isinstance(k, (int, np.integer)) and not isinstance(k, (bool, np.bool_)):
            i = int(k)
            if i < 0:
                i += n
            elif grows:
                n = max(n, i + 1)
            if not 0 <= i < n:
                raise RangeError(f"{name}: index {int(k)} out of bounds for length {n}")
            spec.append(i)
        else:
            raise TypeError(f"{name}: unsupported index {k!r}")
    return tuple(spec)


def compose(outer: Sequence[int | range], inner: Sequence[int | range]) -> tuple[int | range, ...]:
    """
    Apply ``inner`` (relative to the shape selected by ``outer``) to ``outer``.

    The result addresses the same elements directly in the coordinates
    ``outer`` is relative to.
    """
    inner = iter(inner)
    composed = []
    for r in outer:
        if isinstance(r, int):
            composed.append(r)
            continue
        k = next(inner)
        if isinstance(k, int):
            composed.append(r[k])
        else:
            composed.append(r[k.start : k.stop : k.step])
    return tuple(composed)


def to_block(spec: Sequence[int | range]) -> tuple[Block, tuple[int, ...]]:
    """
    Convert an index expression to a start/count/stride block.

    Returns
    -------
    block : tuple
        ``(start, count, stride)``.
    points : tuple of int
        Axes selected by an integer, to be squeezed from the result.
    """
    start, count, stride, points = [], [], [], []
    for axis, r in enumerate(spec):
        if isinstance(r, int):
            start.append(r)
            count.append(1)
            stride.append(1)
            points.append(axis)
        else:
            start.append(r.start)
            count.append(len(r))
            stride.append(r.step)
    return (tuple(start), tuple(count), tuple(stride)), tuple(points)


def check_range(
    shape: Sequence[int],
    start: Sequence[int] | None = None,
    count: Sequence[int] | None = None,
    stride: Sequence[int] | None = None,
    *,
    name: str = "",
    growable: Sequence[int] = (),
) -> Block:
    """
    Fill defaults for a block request and check it against ``shape``.

    ``start`` defaults to the origin, ``stride`` to one and ``count`` to
    everything up to the end of each dimension. Axes listed in ``growable``
    (unlimited dimensions being written) may extend past the current length.

    Raises
    ------
    RangeError
        If the block does not fit inside ``shape``.
    """
    ndim = len(shape)
    start = tuple(int(s) for s in start) if start is not None else (0,) * ndim
    stride = tuple(int(s) for s in stride) if stride is not None else (1,) * ndim
    if count is None:
        count = tuple(
            max(0, math.ceil((n - s) / st)) for n, s, st in zip(shape, start, stride)
        )
    else:
        count = tuple(int(c) for c in count)

    if not len(start) == len(count) == len(stride) == ndim:
        raise RangeError(
            f"{name}: block rank does not match array rank {ndim} "
            f"(start={start}, count={count}, stride={stride})"
        )
    for axis, (n, s, c, st) in enumerate(zip(shape, start, count, stride)):
        if c < 0 or st < 1 or s < 0:
            bad = True
        elif c == 0:
            bad = s > n and axis not in growable
        else:
            bad = s + (c - 1) * st >= n and axis not in growable
        if bad:
            raise RangeError(
                f"{name}: range start={start}, count={count}, stride={stride} "
                f"out of bounds for shape {tuple(shape)}"
            )
    return start, count, stride


def broadcast_block(values: Any, shape: Sequence[int]) -> np.ndarray:
    """
    Broadcast ``values`` to ``shape``, keeping the mask of masked arrays.
    """
    shape = tuple(shape)
    if np.ma.isMaskedArray(values):
        data = np.broadcast_to(np.ma.getdata(values), shape)
        mask = np.broadcast_to(np.ma.getmaskarray(values), shape)
        return np.ma.MaskedArray(data, mask=mask)
    return np.broadcast_to(np.asarray(values), shape)
