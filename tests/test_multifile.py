"""Tests for ncvirtual.multifile module."""

import numpy as np
import pandas as pd
import pytest

from ncvirtual import config, open_dataset, open_mfdataset
from ncvirtual.errors import ResourceError, StructureError
from ncvirtual.multifile import MFDataset, MFVariable, sort_members
from ncvirtual.views import SubVariable


def _full_sst(extents=(10, 5, 20), nlat=2):
    times = np.arange(sum(extents), dtype="f4")
    return times[:, None] * 10 + np.arange(nlat, dtype="f4")


class TestConcatenation:
    """Tests for aggregation along an existing dimension."""

    def test_shape_law(self, time_files):
        """Test that the aggregated length is the sum of member extents."""
        mf = open_mfdataset(time_files)
        assert isinstance(mf, MFDataset)
        assert mf.aggdim == "time"
        assert mf.dimensions["time"] == 35
        assert mf["sst"].shape == (35, 2)
        assert mf["lat"].shape == (2,)

    def test_full_read_matches_members(self, time_files):
        """Test that a full read equals the member reads concatenated in order."""
        mf = open_mfdataset(time_files)
        members = [open_dataset(path, deferred=True)["sst"][:] for path in time_files]
        np.testing.assert_array_equal(mf["sst"][:], np.concatenate(members))
        np.testing.assert_array_equal(mf["sst"][:], _full_sst())

    def test_concrete_routing(self, time_files):
        """Test the 10/5/20 split: start=8, count=10 takes 2, 5 and 3 elements."""
        mf = open_mfdataset(time_files, deferred=False)
        var = mf.variable("sst")
        assert isinstance(var, MFVariable)
        parts = list(var._route((8, 0), (10, 2), (1, 1)))
        assert parts == [(0, 0, 2, 8), (1, 2, 7, 0), (2, 7, 10, 0)]
        data = var.read((8, 0), (10, 2))
        np.testing.assert_array_equal(data[:, 0], np.arange(8, 18) * 10)
        mf.close()

    def test_strided_read(self, time_files):
        """Test a strided read across member boundaries."""
        mf = open_mfdataset(time_files)
        np.testing.assert_array_equal(mf["sst"][3:33:4], _full_sst()[3:33:4])
        np.testing.assert_array_equal(mf["sst"][-1], _full_sst()[-1])

    def test_partial_read_touches_two_members(self, time_files, open_counter):
        """Test that a read spanning two members opens only those two."""
        mf = open_mfdataset(time_files, deferred=True)
        open_counter["filenames"].clear()
        opened = open_counter["opened"]
        data = mf["sst"][12:18]
        assert open_counter["opened"] - opened == 2
        assert open_counter["filenames"] == time_files[1:]
        np.testing.assert_array_equal(data, mf["sst"][:][12:18])

    def test_constant_variable(self, time_files, open_counter):
        """Test that variables without the aggregation dimension come from the first member."""
        mf = open_mfdataset(time_files, deferred=True)
        assert mf.is_constant("lat")
        assert not mf.is_constant("sst")
        open_counter["filenames"].clear()
        np.testing.assert_array_equal(mf["lat"][:], [0, 1])
        assert open_counter["filenames"] == time_files[:1]

    def test_constvars(self, time_files):
        """Test that listed variables are read from the first member only."""
        mf = open_mfdataset(time_files, constvars=["sst"])
        assert mf["sst"].shape == (10, 2)

    def test_threaded_read(self, time_files):
        """Test that concurrent member reads keep member order."""
        mf = open_mfdataset(time_files)
        with config.set({"mfdataset.max_workers": 3}):
            data = mf["sst"][:]
        np.testing.assert_array_equal(data, _full_sst())

    def test_groups(self, time_files):
        """Test aggregation of groups."""
        mf = open_mfdataset(time_files)
        wind = mf["surface/wind"]
        assert wind.shape == (35, 2)
        np.testing.assert_array_equal(wind[9:11, 0], [-90, -100])

    def test_attributes(self, time_files):
        """Test that attributes come from the first member."""
        mf = open_mfdataset(time_files)
        assert mf.attrs["title"] == "test series"
        assert mf["time"].attrs["units"] == "hours since 2000-01-01"

    def test_attribute_write_reaches_every_member(self, time_files):
        """Test that an attribute written on an aggregation is seen by later lookups."""
        mf = open_mfdataset(time_files, mode="a")
        mf["sst"].attrs["units"] = "K"
        assert mf["sst"].attrs["units"] == "K"
        assert [m["sst"].attrs["units"] for m in mf.members] == ["K", "K", "K"]
        for path in time_files:
            assert open_dataset(path, deferred=True)["sst"].attrs["units"] == "K"

    def test_view(self, time_files):
        """Test an index view over an aggregated variable."""
        mf = open_mfdataset(time_files)
        view = mf["sst"].view((slice(5, 30), 1)).view(slice(3, 12, 4))
        assert isinstance(view, SubVariable)
        assert isinstance(view.parent, MFVariable)
        np.testing.assert_array_equal(view[:], _full_sst()[5:30, 1][3:12:4])

    def test_isel(self, time_files):
        """Test a dataset selection over an aggregation."""
        mf = open_mfdataset(time_files)
        sub = mf.isel(time=slice(9, 16))
        np.testing.assert_array_equal(sub["time"][:], np.arange(9, 16))

    def test_members_frame(self, time_files):
        """Test the member summary table."""
        mf = open_mfdataset(time_files)
        frame = mf.members_frame()
        assert isinstance(frame, pd.DataFrame)
        assert frame["offset"].tolist() == [0, 10, 15]
        assert frame["extent"].tolist() == [10, 5, 20]
        assert frame["filename"].tolist() == time_files

    def test_glob(self, time_files, tmp_path):
        """Test that a glob pattern expands to the sorted member files."""
        mf = open_mfdataset(str(tmp_path / "series_*.nc"))
        assert mf.filenames == time_files
        assert mf.dimensions["time"] == 35

    def test_glob_no_match(self, tmp_path):
        """Test that an empty glob raises ResourceError."""
        with pytest.raises(ResourceError, match="No files"):
            open_mfdataset(str(tmp_path / "none_*.nc"))


class TestStacking:
    """Tests for aggregation along a new dimension."""

    def test_new_dimension_first(self, tmp_path, make_time_file):
        """Test that stacking inserts a leading dimension."""
        paths = [
            make_time_file(tmp_path / f"ens_{i}.nc", np.arange(3) + 100 * i, group=False)
            for i in range(4)
        ]
        mf = open_mfdataset(paths, "member", isnewdim=True, constvars=["lat"])
        assert list(mf.dimensions)[0] == "member"
        assert mf.dimensions["member"] == 4
        sst = mf["sst"]
        assert sst.dimensions == ("member", "time", "lat")
        assert sst.shape == (4, 3, 2)
        np.testing.assert_array_equal(sst[:, 0, 0], [0, 1000, 2000, 3000])
        np.testing.assert_array_equal(sst[2, 1:], [[2010, 2011], [2020, 2021]])
        assert mf["lat"].shape == (2,)
        assert mf.members_frame()["extent"].tolist() == [1, 1, 1, 1]

    def test_existing_dimension(self, time_files):
        """Test that stacking along an existing dimension is rejected."""
        with pytest.raises(StructureError, match="already exists"):
            open_mfdataset(time_files, "time", isnewdim=True)

    def test_stacking_requires_aggdim(self, time_files):
        """Test that stacking needs an explicit dimension name."""
        with pytest.raises(ValueError, match="aggdim"):
            open_mfdataset(time_files, isnewdim=True)


class TestValidation:
    """Tests for structural checks at construction."""

    def test_mismatched_dimension(self, tmp_path, make_time_file, open_counter):
        """Test that a differing non-aggregation dimension fails before any read."""
        paths = [
            make_time_file(tmp_path / "a.nc", np.arange(3)),
            make_time_file(tmp_path / "b.nc", np.arange(3, 6), nlat=3),
        ]
        with pytest.raises(StructureError, match="lat") as info:
            open_mfdataset(paths, "time", deferred=False)
        assert "member 1" in str(info.value)
        assert open_counter["opened"] == open_counter["closed"]

    def test_missing_aggdim(self, time_files):
        """Test that an unknown aggregation dimension is rejected."""
        with pytest.raises(StructureError, match="depth"):
            open_mfdataset(time_files, "depth")

    def test_no_unlimited_dimension(self, tmp_path):
        """Test that aggdim is required when there is no unlimited dimension."""
        path = tmp_path / "fixed.nc"
        with open_dataset(path, "w") as ds:
            ds.create_dimension("x", 2)
        with pytest.raises(StructureError, match="unlimited"):
            open_mfdataset([path])

    def test_empty(self):
        """Test that an aggregation needs members."""
        with pytest.raises(StructureError):
            MFDataset([], "time")


class TestWrite:
    """Tests for writes across members."""

    def test_write_spanning_members(self, time_files):
        """Test that a write is split across the members it covers."""
        mf = open_mfdataset(time_files, mode="a")
        mf["sst"][8:17, 0] = np.arange(9) * -1.0
        first = open_dataset(time_files[0], deferred=True)
        second = open_dataset(time_files[1], deferred=True)
        third = open_dataset(time_files[2], deferred=True)
        np.testing.assert_array_equal(first["sst"][8:, 0], [0, -1])
        np.testing.assert_array_equal(second["sst"][:, 0], [-2, -3, -4, -5, -6])
        np.testing.assert_array_equal(third["sst"][:3, 0], [-7, -8, 170])

    def test_partial_failure(self, time_files):
        """Test that a failing member re-raises and earlier members keep their writes."""
        members = [open_dataset(path, "a", deferred=True) for path in time_files[:2]]
        members.append(open_dataset(time_files[2], deferred=True))
        mf = MFDataset(members, "time")
        assert not mf.iswritable
        with pytest.raises(ResourceError):
            mf["sst"][8:17, 1] = 0.5
        first = open_dataset(time_files[0], deferred=True)
        second = open_dataset(time_files[1], deferred=True)
        third = open_dataset(time_files[2], deferred=True)
        np.testing.assert_array_equal(first["sst"][8:, 1], [0.5, 0.5])
        np.testing.assert_array_equal(second["sst"][:, 1], [0.5] * 5)
        np.testing.assert_array_equal(third["sst"][:2, 1], [151, 161])


class TestSortMembers:
    """Tests for sort_members function."""

    def test_sort_by_time(self, time_files):
        """Test ordering members by their first time value."""
        members = [open_dataset(path, deferred=True) for path in reversed(time_files)]
        ordered = sort_members(members, "time")
        assert [m.filename for m in ordered] == time_files

    def test_open_sorted(self, time_files):
        """Test sorting while opening an aggregation."""
        mf = open_mfdataset(list(reversed(time_files)), sort_by="time")
        np.testing.assert_array_equal(mf["time"][:], np.arange(35))
