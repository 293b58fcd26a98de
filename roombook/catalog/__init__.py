"""Community and room catalog loading."""

from .loader import load_catalog

__all__ = ["load_catalog"]
