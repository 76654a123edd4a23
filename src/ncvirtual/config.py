"""
Package configuration.

Values can be changed temporarily with ``config.set`` or through
``NCVIRTUAL_*`` environment variables:

>>> from ncvirtual.config import config
>>> with config.set({"mfdataset.max_workers": 4}):
...     data = mfds["temperature"][:]
"""

from donfig import Config

config = Config(
    "ncvirtual",
    defaults=[
        {
            "cf": {"mask_and_scale": True},
            "mfdataset": {"deferred": True, "max_workers": 1},
        }
    ],
)


def mask_and_scale(value: bool | None = None) -> bool:
    """Resolve a per-call ``maskandscale`` flag against the configured default."""
    if value is None:
        return bool(config.get("cf.mask_and_scale"))
    return bool(value)


def max_workers() -> int:
    """Number of threads used to read aggregation members concurrently."""
    workers = int(config.get("mfdataset.max_workers"))
    if workers < 1:
        raise ValueError(f"mfdataset.max_workers must be at least 1, got {workers}")
    return workers
