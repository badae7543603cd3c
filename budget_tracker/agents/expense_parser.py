"""
Expense Parsing Agent

Turns a receipt photo, a voice memo or a free-text note into a
ParsedExpense proposal.

CRITICAL BOUNDARIES:
- CAN: Read items, amounts, categories and the purchase date
- CANNOT: Persist anything. The result is a PROPOSAL for the user to confirm
- CANNOT: Invent dates. A missing or implausible date becomes today

The LLM reply is reduced to its first JSON object. Everything after that
is deterministic: non-positive items are dropped, unknown categories map
to Other, and the receipt date is checked against a plausibility window.
"""

import json
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from budget_tracker.agents.fallback import ExpenseParsingError, ProviderChain
from budget_tracker.agents.gemini_client import GeminiClient, inline_data
from budget_tracker.config import AppSettings
from budget_tracker.dates import parse_local_date, resolve_ambiguous_date
from budget_tracker.models.expense import (
    ExpenseCategory,
    ExpenseItem,
    ExpenseSource,
    ParsedExpense,
)


logger = structlog.get_logger(__name__)

CATEGORY_LIST = ", ".join(category.value for category in ExpenseCategory)

RECEIPT_PROMPT = f"""Analyze this receipt image and extract ALL purchased items.

RULES:
1. If an item appears several times (e.g., "2x Apple"), create one entry per unit at the unit price
2. If a quantity is shown (e.g., "2 @ $1.50"), create one entry per unit
3. Only include items with positive amounts (actual purchases)
4. The date is the purchase date printed on the receipt, as YYYY-MM-DD. Use null if there is none

Return ONLY a JSON object:
{{"date": "YYYY-MM-DD", "items": [{{"item": "item name", "amount": 0.00, "category": "category name"}}]}}

Categories: {CATEGORY_LIST}. If unsure, use "Other"."""

AUDIO_PROMPT = f"""Listen to this recording of someone describing what they spent.
Transcribe it and extract every item mentioned. If quantities are mentioned
(e.g., "2 bananas"), create one entry per unit.

Return ONLY a JSON object:
{{"transcription": "what was said", "items": [{{"item": "item name", "amount": 0.00, "category": "category name"}}]}}

Categories: {CATEGORY_LIST}. If unsure, use "Other"."""

TEXT_PROMPT = f"""Parse this expense note and extract every item mentioned.

Return ONLY a JSON object:
{{"items": [{{"item": "item name", "amount": 0.00, "category": "category name"}}]}}

Categories: {CATEGORY_LIST}. If unsure, use "Other".

Note: "{{text}}"
"""


def extract_json_object(text: str) -> dict:
    """
    Pull the JSON object out of an LLM reply.

    Takes everything from the first "{" to the last "}", which strips
    markdown fences and chatter around the object.

    Raises:
        ExpenseParsingError: If no JSON object can be decoded
    """
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise ExpenseParsingError("No JSON object in model response")
    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as e:
        raise ExpenseParsingError(f"Malformed JSON in model response: {e}")
    if not isinstance(data, dict):
        raise ExpenseParsingError("Model response is not a JSON object")
    return data


def normalize_mime_type(mime_type: Optional[str], default: str) -> str:
    """Drop codec parameters: "audio/webm;codecs=opus" -> "audio/webm"."""
    if not mime_type:
        return default
    return mime_type.split(";", 1)[0].strip().lower() or default


class ExpenseParsingAgent:
    """
    AI agent for the expense capture flow.

    Args:
        client: Gemini client used for every model call
        chain: Provider fallback over model names. Defaults to the client's models
        settings: App settings for the receipt date window
        today: Clock, injectable for tests
    """

    def __init__(
        self,
        client: GeminiClient,
        chain: Optional[ProviderChain] = None,
        settings: Optional[AppSettings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self._client = client
        self._chain = chain or ProviderChain(client.model_names)
        self._settings = settings or AppSettings()
        self._today = today or date.today

    @property
    def chain(self) -> ProviderChain:
        return self._chain

    async def parse_receipt(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> ParsedExpense:
        """
        Parse a receipt photo.

        Raises:
            AllProvidersFailedError: If no model produced a usable answer
        """
        parts = [RECEIPT_PROMPT, inline_data(image_bytes, normalize_mime_type(mime_type, "image/jpeg"))]
        model_name, data = await self._run(parts)
        return self._build(ExpenseSource.RECEIPT, data, model_name, check_date=True)

    async def parse_audio(self, audio_bytes: bytes, mime_type: str = "audio/webm") -> ParsedExpense:
        """
        Transcribe and parse a voice memo in one call.

        Raises:
            ExpenseParsingError: If the recording is empty
            AllProvidersFailedError: If no model produced a usable answer
        """
        if not audio_bytes:
            raise ExpenseParsingError("Audio recording is empty")
        parts = [AUDIO_PROMPT, inline_data(audio_bytes, normalize_mime_type(mime_type, "audio/webm"))]
        model_name, data = await self._run(parts)
        return self._build(ExpenseSource.AUDIO, data, model_name)

    async def parse_text(self, text: str) -> ParsedExpense:
        """
        Parse a typed note such as "coffee 4.50 and a sandwich 8".

        Raises:
            ExpenseParsingError: If the note is blank
            AllProvidersFailedError: If no model produced a usable answer
        """
        if not text or not text.strip():
            raise ExpenseParsingError("Expense text is empty")
        model_name, data = await self._run([TEXT_PROMPT.replace("{text}", text.strip())])
        return self._build(ExpenseSource.TEXT, data, model_name)

    async def _run(self, parts: list) -> tuple[str, dict]:
        async def attempt(model_name: str) -> tuple[str, dict]:
            reply = await self._client.generate(model_name, parts)
            data = extract_json_object(reply)
            if not isinstance(data.get("items"), list):
                raise ExpenseParsingError("Model response has no items list")
            return model_name, data

        return await self._chain.run(attempt)

    # -------------------------------------------------------------------------
    # Deterministic post-processing
    # -------------------------------------------------------------------------

    def _build(
        self,
        source: ExpenseSource,
        data: dict,
        model_name: str,
        check_date: bool = False,
    ) -> ParsedExpense:
        items = [item for item in (self._item(raw) for raw in data["items"]) if item is not None]
        expense_date = (
            self.plausible_receipt_date(data.get("date"))
            if check_date
            else self._today()
        )
        transcription = data.get("transcription")

        logger.info(
            "expense_parsed",
            source=source.value,
            model=model_name,
            items_in=len(data["items"]),
            items_kept=len(items),
        )
        return ParsedExpense(
            source=source,
            expense_date=expense_date,
            items=items,
            transcription=str(transcription) if transcription else None,
            model_name=model_name,
        )

    def _item(self, raw: Any) -> Optional[ExpenseItem]:
        if not isinstance(raw, dict):
            return None
        name = str(raw.get("item") or "").strip()
        try:
            amount = Decimal(str(raw.get("amount", 0)).strip())
        except InvalidOperation:
            return None
        if not name or not amount.is_finite() or amount <= 0:
            return None
        try:
            return ExpenseItem(
                item=name[:200],
                amount=amount,
                category=ExpenseCategory.from_label(raw.get("category")),
            )
        except ValidationError as e:
            logger.debug("expense_item_skipped", item=name[:50], error=str(e))
            return None

    def plausible_receipt_date(self, raw: Any) -> date:
        """
        The receipt date if it is readable and plausible, else today.

        Plausible means within [today - receipt_max_past_days,
        today + receipt_max_future_days]. Numeric dates with unknown
        day/month order are resolved by resolve_ambiguous_date.
        """
        today = self._today()
        parsed = parse_local_date(raw)
        if parsed is None and isinstance(raw, str):
            parsed = resolve_ambiguous_date(raw, today)
        if parsed is None:
            return today

        earliest = today - timedelta(days=self._settings.receipt_max_past_days)
        latest = today + timedelta(days=self._settings.receipt_max_future_days)
        if not earliest <= parsed <= latest:
            logger.warning("receipt_date_implausible", receipt_date=parsed.isoformat())
            return today
        return parsed
