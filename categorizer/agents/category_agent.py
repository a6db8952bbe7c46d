"""CategoryAgent: LLM-backed classification of expenses into a user's catalog.

One chat-completion request is issued per expense, all expenses of a chunk concurrently. Each request is retried with
backoff; a request that still fails, or whose answer cannot be parsed, becomes a failed outcome for that expense only.
Answers naming a label outside the catalog fall back to "Other".
"""

import asyncio
import json
import math
import re
from collections.abc import Awaitable, Callable, Sequence

from groq import AsyncGroq, RateLimitError

from categorizer.agents.base import BaseClassifier
from categorizer.agents.prompts import build_system_prompt, build_user_prompt
from categorizer.core.errors import ClassificationError, ValidationError
from categorizer.core.models import CategorySuggestion, ClassificationOutcome, Expense
from categorizer.core.settings import MAX_BATCH_SIZE, Settings
from categorizer.core.utils import get_logger, truncate
from categorizer.services.catalog import FALLBACK_CATEGORY, validate_category

DEFAULT_CONFIDENCE = 0.5
RATE_LIMIT_STATUS = 429
MAX_RATE_LIMIT_WAIT = 10.0

logger = get_logger("expense-categorizer.agent")


def is_rate_limited(exc: BaseException) -> bool:
    """Whether ``exc`` is a 429 from the classification service."""
    return isinstance(exc, RateLimitError) or getattr(exc, "status_code", None) == RATE_LIMIT_STATUS


def retry_delay(exc: BaseException, attempt: int) -> float:
    """Seconds to wait after a failed ``attempt`` (1-based)."""
    if is_rate_limited(exc):
        return min(float(2 ** (attempt - 1)), MAX_RATE_LIMIT_WAIT)
    return float(attempt)


def clamp_confidence(raw: object) -> float:
    """Clamp a raw confidence into [0, 1]; non-numbers become the default."""
    if isinstance(raw, bool) or not isinstance(raw, int | float) or math.isnan(raw):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(raw)))


def _load_json_object(content: str) -> dict:
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", content, re.DOTALL)
        if not match:
            msg = f"No JSON object in classifier output: {truncate(content, 120)}"
            raise ClassificationError(msg) from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            msg = f"Unparseable JSON in classifier output: {exc}"
            raise ClassificationError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Classifier output is not a JSON object: {truncate(content, 120)}"
        raise ClassificationError(msg)
    return data


def parse_category_content(content: str | None, categories: Sequence[str]) -> CategorySuggestion:
    """Turn the classifier's JSON text into a suggestion constrained to ``categories``."""
    if not content:
        msg = "Invalid response: missing content in completion"
        raise ClassificationError(msg)
    data = _load_json_object(content)
    returned = data.get("category")
    if not isinstance(returned, str) or not returned.strip():
        msg = "Invalid response: missing or invalid category field"
        raise ClassificationError(msg)

    confidence = clamp_confidence(data.get("confidence"))
    reasoning = data.get("reasoning")
    reasoning = reasoning if isinstance(reasoning, str) else ""

    matched = validate_category(returned, categories)
    if matched is None:
        logger.warning(f"Classifier returned unknown category '{returned}', using '{FALLBACK_CATEGORY}'")
        note = f'Original suggestion "{returned}" was not in available categories'
        return CategorySuggestion(
            category=FALLBACK_CATEGORY,
            confidence=confidence,
            reasoning=f"{note}. {reasoning}".strip() if reasoning else note,
        )
    return CategorySuggestion(category=matched, confidence=confidence, reasoning=reasoning)


def completion_content(completion: object) -> str | None:
    """Text of the first choice of a chat completion, if any."""
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    return getattr(message, "content", None)


class CategoryAgent(BaseClassifier):
    """Agent responsible for LLM-based categorization of expenses."""

    def __init__(
        self,
        llm_client: object,
        settings: Settings,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the CategoryAgent with an async chat-completions client and settings."""
        self.llm_client = llm_client
        self.settings = settings
        self.sleep = sleep

    async def categorize_batch(
        self, expenses: Sequence[Expense], categories: Sequence[str]
    ) -> list[ClassificationOutcome]:
        """Classify up to ``MAX_BATCH_SIZE`` expenses concurrently; failures are reported per expense."""
        if not expenses:
            return []
        if len(expenses) > MAX_BATCH_SIZE:
            msg = f"Batch size too large: {len(expenses)}. Maximum is {MAX_BATCH_SIZE}."
            raise ValidationError(msg)
        if not categories:
            msg = "No available categories provided"
            raise ClassificationError(msg)

        system_prompt = build_system_prompt(list(categories))
        settled = await asyncio.gather(
            *(self.categorize_expense(expense, categories, system_prompt) for expense in expenses),
            return_exceptions=True,
        )

        outcomes = []
        for expense, result in zip(expenses, settled, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Error categorizing expense {expense.id}: {result}")
                outcomes.append(ClassificationOutcome(expense_id=expense.id, success=False, error=str(result)))
            else:
                outcomes.append(ClassificationOutcome(expense_id=expense.id, success=True, suggestion=result))
        return outcomes

    async def categorize_expense(
        self, expense: Expense, categories: Sequence[str], system_prompt: str | None = None
    ) -> CategorySuggestion:
        """Classify a single expense."""
        messages = [
            {"role": "system", "content": system_prompt or build_system_prompt(list(categories))},
            {"role": "user", "content": build_user_prompt(expense.summary, expense.amount, expense.timestamp)},
        ]
        completion = await self._call_llm(messages, expense.id)
        content = completion_content(completion)
        logger.info(f"[{expense.id[:12]}] OUTPUT: {truncate(content or '')}")
        suggestion = parse_category_content(content, categories)
        logger.info(f"[{expense.id[:12]}] Suggested '{suggestion.category}' ({suggestion.confidence:.2f})")
        return suggestion

    async def _call_llm(self, messages: list[dict], expense_id: str) -> object:
        """Issue one chat completion with retry/backoff."""
        attempts = max(1, self.settings.retry_attempts)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.llm_client.chat.completions.create(
                    model=self.settings.model,
                    messages=messages,
                    temperature=self.settings.temperature,
                    max_tokens=self.settings.max_tokens,
                    response_format={"type": "json_object"},
                )
            except Exception as exc:
                last_error = exc
                logger.warning(
                    f"[{expense_id[:12]}] Classifier error (attempt {attempt}/{attempts}): "
                    f"{type(exc).__name__}: {exc}"
                )
                if attempt < attempts:
                    delay = retry_delay(exc, attempt)
                    if is_rate_limited(exc):
                        logger.info(f"[{expense_id[:12]}] Rate limited, waiting {delay:.0f}s before retry")
                    await self.sleep(delay)
        msg = f"Classification request failed after {attempts} attempts: {last_error}"
        raise ClassificationError(msg) from last_error


def build_category_agent(settings: Settings) -> CategoryAgent:
    """Create a CategoryAgent backed by the Groq async client."""
    client = AsyncGroq(api_key=settings.require_classifier())
    return CategoryAgent(client, settings)
