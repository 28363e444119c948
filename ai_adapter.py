"""Gemini-backed slip extraction and spending summaries.

The model is a best-effort collaborator: every reply is parsed and validated
here, and callers still check categories and totals themselves.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Sequence

import google.generativeai as genai
from pydantic import ValidationError as PydanticValidationError

from config import get_settings
from errors import AdapterError
from models import TransactionType
from reconciliation import FALLBACK_CATEGORY
from schemas import SlipGuess, SpendingSummary, TransactionOut


logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)

EMPTY_SUMMARY = SpendingSummary(
    summary="There are no transactions to analyze.",
    top_expense_categories=[],
    savings_suggestions=["Add some transactions to get personalised suggestions."],
)

SLIP_PROMPT = """Analyze this payment or transfer slip and return ONLY a JSON object:
{{"type": "income" | "expense", "category": "...", "amount": 0.0, "note": "..."}}

- type: "expense" when money was paid or transferred to someone else,
  "income" when money was received.
- category: the best match from this list for the chosen type.
  Expense categories: {expense}
  Income categories: {income}
  If unsure use "{fallback}".
- amount: the transferred amount as a number.
- note: a short memo, e.g. the recipient or sender name."""

SUMMARY_PROMPT = """Analyze these personal income and expense transactions and
return ONLY a JSON object with these keys:
- "summary": a brief summary of spending habits.
- "top_expense_categories": the top 3-5 expense categories sorted by amount
  descending, each {{"category": str, "amount": number, "percentage": number}}
  where percentage is the share of total expense.
- "savings_suggestions": a list of personalised saving suggestions.
- "monthly_totals": {{"income": number, "expense": number}} for the period.

Transactions:
{transactions}"""


def _strip_json_fences(text: str) -> str:
    return _JSON_FENCE_RE.sub("", text).strip()


def _parse_json(text: str) -> dict[str, Any]:
    cleaned = _strip_json_fences(text or "")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # some replies wrap the object in prose
        start = cleaned.find("{")
        end = cleaned.rfind("}") + 1
        if start < 0 or end <= start:
            raise AdapterError("AI response did not contain JSON") from None
        try:
            data = json.loads(cleaned[start:end])
        except json.JSONDecodeError as exc:
            raise AdapterError("AI response contained invalid JSON") from exc
    if not isinstance(data, dict):
        raise AdapterError("AI response was not a JSON object")
    return data


class GeminiAdapter:
    def __init__(self, model: Optional[Any] = None) -> None:
        self.settings = get_settings()
        self._model = model

    @property
    def model(self) -> Any:
        if self._model is None:
            if not self.settings.gemini_api_key:
                raise AdapterError("AI analysis is not configured")
            genai.configure(api_key=self.settings.gemini_api_key)
            self._model = genai.GenerativeModel(
                model_name=self.settings.gemini_model,
                generation_config={
                    "temperature": 0.1,
                    "response_mime_type": "application/json",
                },
            )
        return self._model

    def _generate(self, contents: Any, operation: str) -> dict[str, Any]:
        try:
            response = self.model.generate_content(
                contents,
                request_options={"timeout": self.settings.ai_timeout_secs},
            )
            text = response.text
        except AdapterError:
            raise
        except Exception as exc:
            logger.error(f"ai_request_failed: op={operation} {exc}")
            raise AdapterError("AI analysis failed, please try again") from exc
        return _parse_json(text)

    def analyze_slip(
        self,
        image: bytes,
        mime_type: str,
        vocabulary: dict[TransactionType, list[str]],
    ) -> SlipGuess:
        if not image:
            raise AdapterError("No image data to analyze")
        prompt = SLIP_PROMPT.format(
            expense=", ".join(vocabulary.get(TransactionType.expense, [])) or "-",
            income=", ".join(vocabulary.get(TransactionType.income, [])) or "-",
            fallback=FALLBACK_CATEGORY,
        )
        data = self._generate(
            [{"mime_type": mime_type, "data": image}, prompt], "analyze_slip"
        )
        try:
            guess = SlipGuess.model_validate(data)
        except PydanticValidationError as exc:
            raise AdapterError("Could not read a transaction from this slip") from exc
        logger.info(
            f"slip_analyzed: type={guess.type.value} category={guess.category!r} "
            f"amount={guess.amount}"
        )
        return guess

    def analyze_spending(
        self, transactions: Sequence[TransactionOut]
    ) -> SpendingSummary:
        if not transactions:
            return EMPTY_SUMMARY.model_copy(deep=True)
        payload = json.dumps(
            [
                {
                    "type": t.type.value,
                    "category": t.category,
                    "amount": str(t.amount),
                    "note": t.note,
                    "created_at": t.created_at.isoformat(),
                }
                for t in transactions
            ],
            indent=2,
            ensure_ascii=False,
        )
        data = self._generate(
            SUMMARY_PROMPT.format(transactions=payload), "analyze_spending"
        )
        try:
            return SpendingSummary.model_validate(data)
        except PydanticValidationError as exc:
            raise AdapterError("AI summary had an unexpected shape") from exc
