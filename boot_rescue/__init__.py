"""Boot repair orchestration for rescue environments."""

from .__version__ import __version__


__all__ = ["__version__"]
