"""
ncvirtual: virtual arrays over NetCDF files.

Variables stored in NetCDF files, possibly packed with CF scale/offset,
possibly spread over thousands of files, are exposed as lazily indexed
arrays: CF unpacking, index views, deferred (open-per-access) files and
multi-file aggregation all compose.
"""

__version__ = "2025.10.0"
__author__ = "James Mineau"
__email__ = "jameskmineau@gmail.com"

from .api import open_dataset, open_mfdataset
from .config import config
from .dataset import Dataset
from .defer import DeferDataset, DeferVariable, Resource
from .errors import (
    EncodingError,
    NCVirtualError,
    RangeError,
    ResourceError,
    StructureError,
)
from .multifile import MFDataset, MFVariable, sort_members
from .variable import CFVariable, StorageParams, Variable
from .views import SubDataset, SubVariable

__all__ = [
    "open_dataset",
    "open_mfdataset",
    "config",
    "Dataset",
    "DeferDataset",
    "DeferVariable",
    "Resource",
    "MFDataset",
    "MFVariable",
    "sort_members",
    "Variable",
    "CFVariable",
    "StorageParams",
    "SubVariable",
    "SubDataset",
    "NCVirtualError",
    "ResourceError",
    "RangeError",
    "StructureError",
    "EncodingError",
]
