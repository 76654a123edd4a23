"""
Entry points for opening single and multi-file datasets.
"""

import glob
from collections.abc import Sequence
from pathlib import Path

from ncvirtual.config import config
from ncvirtual.dataset import Dataset
from ncvirtual.defer import DeferDataset, Resource
from ncvirtual.errors import ResourceError, StructureError
from ncvirtual.multifile import MFDataset, sort_members


def open_dataset(
    filename: Path | str,
    mode: str = "r",
    *,
    deferred: bool = False,
    maskandscale: bool | None = None,
) -> Dataset | DeferDataset:
    """
    Open a NetCDF file.

    Parameters
    ----------
    filename : Path or str
        Path to the NetCDF file.
    mode : {"r", "a", "w"}
        Read-only, write into an existing file, or create a new file.
    deferred : bool, default False
        Capture the metadata and close the file immediately; data accesses
        reopen it for their own duration.
    maskandscale : bool, optional
        Whether ``ds[name]`` applies the CF transform. Defaults to the
        ``cf.mask_and_scale`` configuration value.

    Returns
    -------
    Dataset or DeferDataset
    """
    if deferred:
        return DeferDataset(Resource.from_file(filename, mode), maskandscale=maskandscale)
    return Dataset(filename, mode, maskandscale=maskandscale)


def open_mfdataset(
    paths: Sequence[Path | str] | Path | str,
    aggdim: str | None = None,
    *,
    isnewdim: bool = False,
    constvars: Sequence[str] = (),
    deferred: bool | None = None,
    mode: str = "r",
    sort_by: str | None = None,
    maskandscale: bool | None = None,
) -> MFDataset:
    """
    Open many NetCDF files as one aggregated dataset.

    Parameters
    ----------
    paths : sequence of paths, or a glob pattern
        Member files. A pattern is expanded and sorted by filename; an
        explicit sequence keeps its order.
    aggdim : str, optional
        Aggregation dimension. Defaults to the unlimited dimension of the
        first file.
    isnewdim : bool, default False
        Stack the files along a new leading dimension ``aggdim``.
    constvars : sequence of str, optional
        Variables read from the first file only.
    deferred : bool, optional
        Open members only while they are accessed. Defaults to the
        ``mfdataset.deferred`` configuration value.
    mode : {"r", "a"}
        Mode used for every member.
    sort_by : str, optional
        Order members by the first value of this variable (e.g. "time").
    maskandscale : bool, optional
        Whether ``ds[name]`` applies the CF transform.

    Returns
    -------
    MFDataset

    Raises
    ------
    ResourceError
        If a pattern matches no file or a member cannot be opened.
    StructureError
        If the members are not compatible, or ``aggdim`` is omitted and the
        first file has no unlimited dimension.
    """
    if isinstance(paths, (str, Path)):
        filenames = sorted(glob.glob(str(paths)))
    else:
        filenames = [str(p) for p in paths]
    if not filenames:
        raise ResourceError(f"No files match {paths}")
    if deferred is None:
        deferred = bool(config.get("mfdataset.deferred"))

    members = []
    try:
        for filename in filenames:
            members.append(
                open_dataset(filename, mode, deferred=deferred, maskandscale=maskandscale)
            )
        if sort_by is not None:
            members = sort_members(members, sort_by)
        if aggdim is None:
            if isnewdim:
                raise ValueError("aggdim is required to stack along a new dimension")
            unlimited = members[0].dimensions.unlimited
            if not unlimited:
                raise StructureError(
                    f"{members[0].filename} has no unlimited dimension; pass aggdim"
                )
            aggdim = unlimited[0]
        return MFDataset(
            members, aggdim, isnewdim, constvars, maskandscale=maskandscale
        )
    except BaseException:
        for member in members:
            member.close()
        raise
