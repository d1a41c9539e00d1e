from __future__ import annotations

from moneyspread.taxonomy.core import Taxonomy


class RuleClassifier:
    """Deterministic keyword classifier used when the model is unavailable.

    Keywords are matched as case-insensitive substrings of
    ``"<description> <merchant>"``; categories are tried in taxonomy order.
    """

    def __init__(self, taxonomy: Taxonomy) -> None:
        self._taxonomy = taxonomy

    def classify(self, description: str, merchant: str | None, amount: float) -> str:
        haystack = f"{description} {merchant or ''}".lower()
        for node in self._taxonomy.all_nodes():
            if any(keyword in haystack for keyword in node.keywords):
                return node.name
        if amount > 0:
            return self._taxonomy.inflow_category
        return self._taxonomy.fallback_category
