"""PVEScripts importer package."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__ = version("pveimport")
except PackageNotFoundError:
    __version__ = "0.4.0"
