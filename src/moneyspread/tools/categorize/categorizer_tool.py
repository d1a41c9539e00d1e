from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import json
import os
from typing import Literal

import loguru
from loguru import logger
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from moneyspread.taxonomy.core import Taxonomy
from moneyspread.taxonomy.loader import default_taxonomy
from moneyspread.tools.categorize.fallback import RuleClassifier

DEFAULT_MODEL = "gpt-4o-mini"

SYSTEM_PROMPT = (
    "You are a financial transaction categorization expert. "
    "Be precise and consistent."
)

CategorySource = Literal["model", "rules"]


class CategorizationError(Exception):
    """The remote categorization call failed or returned unusable output."""


@dataclass(frozen=True)
class TxSummary:
    """What the categorizer needs to know about one transaction.

    ``amount`` uses the local sign convention (positive is an inflow).
    """

    description: str
    amount: float
    merchant: str | None = None
    transaction_id: int | None = None
    is_manual_category: bool = False


@dataclass(frozen=True)
class CategorizedTransaction:
    txn: TxSummary
    category: str
    source: CategorySource


class ModelCategory(BaseModel):
    """Single item of the model's JSON array reply."""

    description: str
    amount: float | None = None
    category: str


class CategorizerLogger:
    """Handles all logging for the categorizer."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def api_call(self, txn_count: int, model: str) -> None:
        self._logger.bind(transaction_count=txn_count, model=model).info(
            "Calling OpenAI {} for {} transactions", model, txn_count
        )

    def skipped_manual(self, count: int) -> None:
        if count:
            self._logger.debug("Skipping {} manually categorized transactions", count)

    def fallback(self, count: int, reason: str) -> None:
        self._logger.bind(transaction_count=count).warning(
            "Using rule-based categories for {} transactions: {}", count, reason
        )

    def invalid_label(self, description: str, category: str) -> None:
        self._logger.bind(description=description).debug(
            "Model returned unknown category '{}' for '{}'", category, description
        )

    def invalid_item(self, item: object, error: ValidationError) -> None:
        self._logger.bind(error_count=error.error_count()).debug(
            "Ignoring malformed reply item {!r}: {}", item, error
        )

    def categorization_summary(self, categorized: list[CategorizedTransaction]) -> None:
        from_model = sum(1 for c in categorized if c.source == "model")
        self._logger.bind(
            total_categorized=len(categorized), from_model=from_model
        ).info(
            "Categorization complete: {} categorized, {} by model, {} by rules",
            len(categorized),
            from_model,
            len(categorized) - from_model,
        )


def strip_code_fences(text: str) -> str:
    """Remove a leading ```json (any case) or ``` fence and a trailing ``` fence."""
    stripped = text.strip()
    if stripped[: len("```json")].lower() == "```json":
        stripped = stripped[len("```json") :]
    elif stripped.startswith("```"):
        stripped = stripped[len("```") :]
    if stripped.endswith("```"):
        stripped = stripped[: -len("```")]
    return stripped.strip()


def _first_word(text: str) -> str:
    parts = text.split()
    return parts[0].lower() if parts else ""


class Categorizer:
    def __init__(
        self,
        client: AsyncOpenAI | None,
        taxonomy: Taxonomy | None = None,
        *,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.1,
    ) -> None:
        self._client = client
        self._taxonomy = taxonomy or default_taxonomy()
        self._model = model
        self._temperature = temperature
        self._rules = RuleClassifier(self._taxonomy)
        self._logger = CategorizerLogger()

    @classmethod
    def from_env(
        cls, taxonomy: Taxonomy | None = None, *, model: str | None = None
    ) -> Categorizer:
        """Build a categorizer from OPENAI_API_KEY.

        Without a key the categorizer runs on keyword rules only.
        """
        api_key = os.environ.get("OPENAI_API_KEY", "").strip()
        client = AsyncOpenAI(api_key=api_key) if api_key else None
        if client is None:
            logger.info("OPENAI_API_KEY not set; categorization will use rules only")
        return cls(client, taxonomy, model=model or DEFAULT_MODEL)

    @property
    def taxonomy(self) -> Taxonomy:
        return self._taxonomy

    async def categorize(
        self, txns: Iterable[TxSummary]
    ) -> list[CategorizedTransaction]:
        """Categorize ``txns`` with one batched model call.

        Manually categorized inputs are skipped. Anything the model cannot
        answer for, including a failed call, is categorized by keyword rules.
        """
        txn_list = list(txns)
        eligible = [t for t in txn_list if not t.is_manual_category]
        self._logger.skipped_manual(len(txn_list) - len(eligible))
        if not eligible:
            return []

        try:
            items = await self._ask_model(eligible)
        except CategorizationError as e:
            self._logger.fallback(len(eligible), str(e))
            categorized = [self._by_rules(t) for t in eligible]
        else:
            categorized = self._match(items, eligible)

        self._logger.categorization_summary(categorized)
        return categorized

    def classify_by_rules(self, txn: TxSummary) -> str:
        return self._rules.classify(txn.description, txn.merchant, txn.amount)

    def _by_rules(self, txn: TxSummary) -> CategorizedTransaction:
        return CategorizedTransaction(
            txn=txn, category=self.classify_by_rules(txn), source="rules"
        )

    def _render_prompt(self, txns: list[TxSummary]) -> str:
        lines = [
            f"{i}. Description: {t.description} | Amount: ${abs(t.amount):.2f} | "
            f"Merchant: {t.merchant or 'Unknown'}"
            for i, t in enumerate(txns, start=1)
        ]
        return (
            "Categorize each of these financial transactions into exactly one of "
            f"these categories: {self._taxonomy.to_prompt()}.\n\n"
            "Transactions:\n" + "\n".join(lines) + "\n\n"
            "Respond with only a minified JSON array, one object per transaction, "
            'of the form [{"description":"...","amount":0.0,"category":"..."}]. '
            "Copy each description exactly as given and use the absolute amount."
        )

    async def _ask_model(self, txns: list[TxSummary]) -> list[ModelCategory]:
        if self._client is None:
            raise CategorizationError("no OpenAI client configured")

        self._logger.api_call(len(txns), self._model)
        try:
            resp = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self._render_prompt(txns)},
                ],
                temperature=self._temperature,
            )
        except OpenAIError as e:
            raise CategorizationError(f"OpenAI request failed: {e}") from e

        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise CategorizationError("OpenAI returned an empty reply")
        return self._parse_reply(content)

    def _parse_reply(self, content: str) -> list[ModelCategory]:
        """Parse the reply array, keeping each item that validates on its own.

        Raises:
            CategorizationError: If the reply is not a JSON array
        """
        try:
            raw = json.loads(strip_code_fences(content))
        except json.JSONDecodeError as e:
            raise CategorizationError(f"Unparsable categorization reply: {e}") from e
        if not isinstance(raw, list):
            raise CategorizationError(
                f"Expected a JSON array reply, got {type(raw).__name__}"
            )

        items: list[ModelCategory] = []
        for entry in raw:
            try:
                items.append(ModelCategory.model_validate(entry))
            except ValidationError as e:
                self._logger.invalid_item(entry, e)
        return items

    def _match(
        self, items: list[ModelCategory], txns: list[TxSummary]
    ) -> list[CategorizedTransaction]:
        """Pair model items with inputs; unmatched inputs fall back to rules."""
        assigned: dict[int, CategorizedTransaction] = {}

        for item in items:
            idx = self._find_input(item, txns, assigned)
            if idx is None:
                continue
            txn = txns[idx]
            if self._taxonomy.is_valid(item.category):
                assigned[idx] = CategorizedTransaction(
                    txn=txn, category=item.category, source="model"
                )
            else:
                self._logger.invalid_label(txn.description, item.category)
                assigned[idx] = self._by_rules(txn)

        return [assigned.get(i) or self._by_rules(t) for i, t in enumerate(txns)]

    @staticmethod
    def _find_input(
        item: ModelCategory,
        txns: list[TxSummary],
        assigned: dict[int, CategorizedTransaction],
    ) -> int | None:
        for idx, txn in enumerate(txns):
            if idx not in assigned and txn.description == item.description:
                return idx

        word = _first_word(item.description)
        if not word or item.amount is None:
            return None
        for idx, txn in enumerate(txns):
            if idx in assigned:
                continue
            if (
                abs(abs(txn.amount) - item.amount) < 0.01
                and word in txn.description.lower()
            ):
                return idx
        return None
