"""Convert legacy PHP/HTML help pages to Markdown."""

from .version import __version__

__all__ = ["__version__"]
