"""hostplane — single-host control plane for tenant sites and their services."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("hostplane")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
