"""tf-control — reconciliation engine for Terraform resources."""

from importlib.metadata import PackageNotFoundError, version as _dist_version

__all__ = ["__version__"]

try:
    __version__ = _dist_version("tf-control")
except PackageNotFoundError:
    __version__ = "0.0.0"
