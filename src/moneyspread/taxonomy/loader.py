"""Taxonomy loader - reads the packaged category YAML."""

from __future__ import annotations

from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from moneyspread.taxonomy.core import CategoryNode, Taxonomy


def parse_taxonomy(data: Any) -> Taxonomy:
    """Build a Taxonomy from the parsed YAML document.

    Raises:
        ValueError: If the document does not have the expected shape
    """
    if not isinstance(data, dict) or not isinstance(data.get("categories"), list):
        raise ValueError("Taxonomy document must contain a 'categories' list")

    nodes: list[CategoryNode] = []
    for entry in data["categories"]:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ValueError(f"Invalid category entry: {entry!r}")
        budget = entry.get("budget")
        nodes.append(
            CategoryNode(
                name=str(entry["name"]),
                color=entry.get("color"),
                budget=None if budget is None else float(budget),
                keywords=tuple(str(k).lower() for k in entry.get("keywords") or []),
            )
        )

    return Taxonomy(
        nodes,
        fallback_category=str(data.get("fallback_category", "Other")),
        inflow_category=str(data.get("inflow_category", "Income")),
    )


def load_taxonomy(path: Path | None = None) -> Taxonomy:
    """Load a taxonomy from ``path``, or the packaged default when omitted."""
    if path is None:
        return default_taxonomy()
    return parse_taxonomy(yaml.safe_load(path.read_text(encoding="utf-8")))


@lru_cache(maxsize=1)
def default_taxonomy() -> Taxonomy:
    text = (
        resources.files("moneyspread.taxonomy")
        .joinpath("categories.yaml")
        .read_text(encoding="utf-8")
    )
    return parse_taxonomy(yaml.safe_load(text))
