"""Shared fixtures: small NetCDF files written into tmp_path."""

import netCDF4
import numpy as np
import pytest

NLAT = 2


def write_time_file(path, times, nlat=NLAT, group=True):
    """
    Write one member of a time series.

    ``sst`` holds ``time * 10 + lat`` so every element identifies its
    global position; ``lat`` is identical in every file.
    """
    times = np.asarray(times, dtype="f8")
    with netCDF4.Dataset(path, "w") as nc:
        nc.set_auto_maskandscale(False)
        nc.createDimension("time", None)
        nc.createDimension("lat", nlat)
        nc.title = "test series"

        time = nc.createVariable("time", "f8", ("time",))
        time.units = "hours since 2000-01-01"
        time[: len(times)] = times

        lat = nc.createVariable("lat", "f4", ("lat",))
        lat[:] = np.arange(nlat, dtype="f4")

        sst = nc.createVariable("sst", "f4", ("time", "lat"))
        sst.set_auto_maskandscale(False)
        sst[: len(times), :] = times[:, None] * 10 + np.arange(nlat)

        if group:
            surface = nc.createGroup("surface")
            surface.set_auto_maskandscale(False)
            wind = surface.createVariable("wind", "f4", ("time", "lat"))
            wind.set_auto_maskandscale(False)
            wind[: len(times), :] = -(times[:, None] * 10 + np.arange(nlat))
    return str(path)


@pytest.fixture
def make_time_file():
    """Factory writing a single time series member (see `write_time_file`)."""
    return write_time_file


@pytest.fixture
def time_files(tmp_path):
    """Three members with 10, 5 and 20 time steps, numbered consecutively."""
    extents = [10, 5, 20]
    paths = []
    first = 0
    for i, n in enumerate(extents):
        paths.append(write_time_file(tmp_path / f"series_{i}.nc", np.arange(first, first + n)))
        first += n
    return paths


@pytest.fixture
def packed_file(tmp_path):
    """
    A file exercising the CF storage attributes.

    - ``temp``: int16 packed with scale 0.01, offset 273.15 and a fill value.
    - ``count``: int32 with a fill value and no packing.
    - ``plain``: float64 without any storage attribute.
    - ``flag``: int8 with ``missing_value`` only.
    - ``time`` / ``time_bnds``: a coordinate and its CF bounds.
    """
    path = tmp_path / "packed.nc"
    with netCDF4.Dataset(path, "w") as nc:
        nc.set_auto_maskandscale(False)
        nc.createDimension("time", None)
        nc.createDimension("lat", 3)
        nc.createDimension("nv", 2)

        temp = nc.createVariable("temp", "i2", ("time", "lat"), fill_value=-32767)
        temp.set_auto_maskandscale(False)
        temp.scale_factor = np.float32(0.01)
        temp.add_offset = np.float32(273.15)
        temp[0:4, :] = np.array(
            [[0, 100, -100], [-32767, 5, 6], [7, 8, 9], [10, 11, -32767]], dtype="i2"
        )

        count = nc.createVariable("count", "i4", ("lat",), fill_value=-1)
        count.set_auto_maskandscale(False)
        count[:] = np.array([3, -1, 7], dtype="i4")

        plain = nc.createVariable("plain", "f8", ("time", "lat"))
        plain[0:4, :] = np.arange(12, dtype="f8").reshape(4, 3) / 3

        flag = nc.createVariable("flag", "i1", ("lat",))
        flag.set_auto_maskandscale(False)
        flag.missing_value = np.int8(-9)
        flag[:] = np.array([1, -9, 0], dtype="i1")

        time = nc.createVariable("time", "f8", ("time",))
        time.bounds = "time_bnds"
        time[0:4] = np.arange(4, dtype="f8")

        bnds = nc.createVariable("time_bnds", "f8", ("time", "nv"))
        bnds[0:4, :] = np.stack([np.arange(4), np.arange(1, 5)], axis=1)
    return str(path)


@pytest.fixture
def open_counter(monkeypatch):
    """
    Count handles opened and closed through the backend.

    Returns a dict with ``opened``, ``closed``, the list of ``handles`` and
    the ``filenames`` they were opened from, in opening order.
    """
    from ncvirtual import backend

    counts = {"opened": 0, "closed": 0, "handles": [], "filenames": []}
    real_open = backend.open_handle
    real_close = backend.close_handle

    def counting_open(filename, mode="r"):
        handle = real_open(filename, mode)
        counts["opened"] += 1
        counts["handles"].append(handle)
        counts["filenames"].append(str(filename))
        return handle

    def counting_close(handle):
        real_close(handle)
        counts["closed"] += 1

    monkeypatch.setattr(backend, "open_handle", counting_open)
    monkeypatch.setattr(backend, "close_handle", counting_close)
    return counts
