from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field


@dataclass(frozen=True)
class CategoryNode:
    name: str
    color: str | None = None
    budget: float | None = None
    keywords: tuple[str, ...] = field(default_factory=tuple)


class Taxonomy:
    """Closed, ordered set of category labels.

    Node order is the fallback classifier's priority order.
    """

    def __init__(
        self,
        nodes: Sequence[CategoryNode],
        *,
        fallback_category: str,
        inflow_category: str,
    ) -> None:
        self._nodes = list(nodes)
        self._nodes_by_name: dict[str, CategoryNode] = {}
        for node in self._nodes:
            if node.name in self._nodes_by_name:
                raise ValueError(f"Duplicate category name '{node.name}'")
            self._nodes_by_name[node.name] = node
        for special in (fallback_category, inflow_category):
            if special not in self._nodes_by_name:
                raise ValueError(f"Category '{special}' is not in the taxonomy")
        self._fallback_category = fallback_category
        self._inflow_category = inflow_category

    @property
    def fallback_category(self) -> str:
        return self._fallback_category

    @property
    def inflow_category(self) -> str:
        return self._inflow_category

    def is_valid(self, name: str) -> bool:
        return name in self._nodes_by_name

    def get(self, name: str) -> CategoryNode | None:
        return self._nodes_by_name.get(name)

    def names(self) -> list[str]:
        return [n.name for n in self._nodes]

    def all_nodes(self) -> list[CategoryNode]:
        return list(self._nodes)

    def default_budgets(self) -> dict[str, float]:
        return {n.name: n.budget for n in self._nodes if n.budget is not None}

    def to_prompt(self) -> str:
        """Comma-separated quoted labels for embedding in a prompt."""
        return ", ".join(f'"{name}"' for name in self.names())

    def __len__(self) -> int:
        return len(self._nodes)
