"""Tests for ncvirtual.defer module."""

import numpy as np
import pytest

from ncvirtual import backend, open_dataset
from ncvirtual.defer import DeferDataset, DeferVariable, Resource
from ncvirtual.errors import RangeError, ResourceError


class TestResource:
    """Tests for Resource class."""

    def test_from_file(self, packed_file, open_counter):
        """Test that the metadata is captured with a single open."""
        resource = Resource.from_file(packed_file)
        assert open_counter["opened"] == 1
        assert open_counter["closed"] == 1
        assert resource.metadata["dimensions"] == {"time": 4, "lat": 3, "nv": 2}
        assert resource.metadata["unlimited"] == ["time"]
        assert resource.metadata["variables"]["temp"]["shape"] == (4, 3)

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises ResourceError."""
        with pytest.raises(ResourceError):
            Resource.from_file(tmp_path / "missing.nc")

    def test_access_mode(self):
        """Test that created files are reopened for appending."""
        assert Resource("a.nc", "w").access_mode == "a"
        assert Resource("a.nc", "a").access_mode == "a"
        assert Resource("a.nc", "r").access_mode == "r"

    def test_group_metadata_missing(self, time_files):
        """Test that unknown group paths raise KeyError."""
        resource = Resource.from_file(time_files[0])
        assert resource.group_metadata("/surface")["path"] == "/surface"
        with pytest.raises(KeyError, match="upper"):
            resource.group_metadata("/upper")


class TestDeferDataset:
    """Tests for DeferDataset and DeferVariable classes."""

    def test_metadata_opens_nothing(self, time_files, open_counter):
        """Test that metadata queries never open the file."""
        ds = open_dataset(time_files[0], deferred=True)
        opened = open_counter["opened"]
        assert isinstance(ds, DeferDataset)
        assert ds.dimensions["time"] == 10
        assert ds.dimensions.unlimited == ("time",)
        assert ds.attrs["title"] == "test series"
        assert ds["sst"].shape == (10, 2)
        assert ds["sst"].attrs == {}
        assert ds.groups["surface"]["wind"].dimensions == ("time", "lat")
        assert ds.bounds_map == {}
        assert open_counter["opened"] == opened

    def test_no_leak(self, time_files, open_counter):
        """Test that no handle stays open after reads and writes."""
        ds = open_dataset(time_files[1], "a", deferred=True)
        sst = ds["sst"]
        for i in range(5):
            sst[i, 0] = -1.0
            assert sst[i, 0] == -1.0
        ds.attrs["history"] = "edited"
        assert open_counter["opened"] == open_counter["closed"]
        assert all(not handle.isopen() for handle in open_counter["handles"])

    def test_read(self, time_files):
        """Test that deferred reads equal direct reads."""
        ds = open_dataset(time_files[2], deferred=True)
        var = ds.variable("sst")
        assert isinstance(var, DeferVariable)
        assert var.path == "/sst"
        np.testing.assert_array_equal(var[3:6, 1], [181, 191, 201])

    def test_group_variable(self, time_files):
        """Test reading a variable inside a group."""
        ds = open_dataset(time_files[0], deferred=True)
        np.testing.assert_array_equal(ds["surface/wind"][2], [-20, -21])

    def test_range_checked_before_open(self, time_files, open_counter):
        """Test that invalid ranges fail without opening the file."""
        ds = open_dataset(time_files[0], deferred=True)
        opened = open_counter["opened"]
        with pytest.raises(RangeError):
            ds.variable("sst").read((9, 0), (2, 2))
        assert open_counter["opened"] == opened

    def test_attribute_write(self, time_files):
        """Test that attribute writes reach the file and the cached copy."""
        ds = open_dataset(time_files[0], "a", deferred=True)
        sst = ds["sst"]
        sst.attrs["units"] = "K"
        assert sst.attrs["units"] == "K"
        del sst.attrs["units"]
        assert "units" not in sst.attrs
        sst.attrs["units"] = "degC"
        reopened = open_dataset(time_files[0], deferred=True)
        assert reopened["sst"].attrs["units"] == "degC"

    def test_attribute_write_seen_by_later_lookups(self, time_files):
        """Test that a new lookup of the entity sees an attribute written through another."""
        ds = open_dataset(time_files[0], "a", deferred=True)
        ds["sst"].attrs["units"] = "K"
        ds.attrs["history"] = "edited"
        assert ds["sst"].attrs["units"] == "K"
        assert ds.variable("sst").attrs["units"] == "K"
        assert ds.attrs["history"] == "edited"

    def test_storage_attribute_write_applies_to_later_writes(self, time_files):
        """Test that a scale_factor set on a deferred variable packs later writes."""
        ds = open_dataset(time_files[0], "a", deferred=True)
        ds["sst"].attrs["scale_factor"] = np.float32(2.0)
        ds["sst"][0, 0] = 10.0
        assert ds["sst"][0, 0] == 10.0
        with open_dataset(time_files[0], maskandscale=False) as direct:
            assert direct["sst"][0, 0] == 5.0
        with open_dataset(time_files[0]) as direct:
            assert direct["sst"][0, 0] == 10.0

    def test_write_error_names_range(self, time_files):
        """Test that a failed write reports the entity and the requested range."""
        ds = open_dataset(time_files[0], deferred=True)
        with pytest.raises(ResourceError, match=r"/sst \(start=\(2, 0\), count=\(1, 2\)"):
            ds.variable("sst").write((2, 0), (1, 2), [1.0, 2.0])

    def test_write_mode_not_truncated(self, tmp_path):
        """Test that a file created with "w" keeps its content between accesses."""
        path = tmp_path / "created.nc"
        with open_dataset(path, "w") as ds:
            ds.create_dimension("x", 3)
            ds.create_variable("v", "f8", ("x",))
        resource = Resource.from_file(path, "a")
        deferred = DeferDataset(Resource(str(path), "w", resource.metadata))
        deferred["v"][:] = [1.0, 2.0, 3.0]
        np.testing.assert_array_equal(deferred["v"][:], [1.0, 2.0, 3.0])


class TestOpened:
    """Tests for closing after failed accesses."""

    def test_error_propagates(self, time_files, open_counter):
        """Test that a failure inside an access still closes the file."""
        resource = Resource.from_file(time_files[0])
        with pytest.raises(ResourceError, match="nothing"):
            with resource.acquire() as handle:
                backend.resolve(handle, "/nothing")
        assert open_counter["opened"] == open_counter["closed"]

    def test_close_failure_does_not_mask_error(self, time_files, monkeypatch):
        """Test that a close failure after an error keeps the original error."""
        resource = Resource.from_file(time_files[0])
        real_close = backend.close_handle

        def failing_close(handle):
            real_close(handle)
            raise ResourceError("close failed")

        monkeypatch.setattr(backend, "close_handle", failing_close)
        with pytest.raises(KeyError, match="original"):
            with resource.acquire():
                raise KeyError("original")

    def test_close_failure_after_success(self, time_files, monkeypatch):
        """Test that a close failure on a clean exit is raised."""
        resource = Resource.from_file(time_files[0])
        real_close = backend.close_handle

        def failing_close(handle):
            real_close(handle)
            raise ResourceError("close failed")

        monkeypatch.setattr(backend, "close_handle", failing_close)
        with pytest.raises(ResourceError, match="close failed"):
            with resource.acquire():
                pass
