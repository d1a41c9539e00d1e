"""Category taxonomy."""

from __future__ import annotations

from moneyspread.taxonomy.core import CategoryNode, Taxonomy
from moneyspread.taxonomy.loader import default_taxonomy, load_taxonomy, parse_taxonomy

__all__ = [
    "CategoryNode",
    "Taxonomy",
    "default_taxonomy",
    "load_taxonomy",
    "parse_taxonomy",
]
