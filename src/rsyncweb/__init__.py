"""rsync-web - launch, watch and cancel rsync jobs from a browser."""

__version__ = "0.1.0"

__all__ = ["__version__"]
