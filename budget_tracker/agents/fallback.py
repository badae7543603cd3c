"""
Provider Fallback

An ordered list of model providers tried one after the other: the first
success wins, and the winner is tried first on the next call.

The chain knows nothing about Gemini. A provider is just a name handed
to the attempt callable.
"""

from typing import Awaitable, Callable, Generic, Optional, Sequence, TypeVar

import structlog
from google.api_core import exceptions as google_exceptions


logger = structlog.get_logger(__name__)

T = TypeVar("T")

_OVERLOAD_MARKERS = ("429", "quota", "overloaded", "resource exhausted")


class ExpenseParsingError(Exception):
    """A provider answered but the answer couldn't be turned into an expense."""
    pass


class ProviderOverloadedError(ExpenseParsingError):
    """A provider is rate-limited or out of quota."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} is overloaded: {message}")


class AllProvidersFailedError(ExpenseParsingError):
    """Every provider in the chain failed."""

    def __init__(self, failures: list[tuple[str, Exception]]):
        self.failures = failures
        super().__init__(self._describe())

    @property
    def last_error(self) -> Optional[Exception]:
        return self.failures[-1][1] if self.failures else None

    @property
    def overloaded(self) -> bool:
        """True when every failure was an overload."""
        return bool(self.failures) and all(
            isinstance(error, ProviderOverloadedError) for _, error in self.failures
        )

    def _describe(self) -> str:
        if not self.failures:
            return "No providers configured"
        if self.overloaded:
            return "The AI service is currently overloaded. Please wait a moment and try again."
        return f"All {len(self.failures)} provider(s) failed. Last error: {self.last_error}"


def is_overload_error(error: Exception) -> bool:
    """Rate limits, exhausted quota and overload responses."""
    if isinstance(error, (ProviderOverloadedError, google_exceptions.ResourceExhausted)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _OVERLOAD_MARKERS)


FailureHook = Callable[[str, Exception, bool], Awaitable[None]]


class ProviderChain(Generic[T]):
    """
    Ordered-retry combinator over provider names.

    Args:
        providers: Provider names in preference order
        on_failure: Awaited with (provider, error, overloaded) for every failed attempt
    """

    def __init__(
        self,
        providers: Sequence[str],
        on_failure: Optional[FailureHook] = None,
    ):
        self._providers = list(dict.fromkeys(providers))
        self._preferred: Optional[str] = None
        self._on_failure = on_failure

    @property
    def preferred(self) -> Optional[str]:
        """The provider that succeeded last, if any."""
        return self._preferred

    @property
    def order(self) -> list[str]:
        """Providers in the order the next run will try them."""
        if self._preferred is None:
            return list(self._providers)
        return [self._preferred] + [p for p in self._providers if p != self._preferred]

    async def run(self, attempt: Callable[[str], Awaitable[T]]) -> T:
        """
        Call attempt(provider) for each provider until one returns.

        Raises:
            AllProvidersFailedError: If every provider raised
        """
        failures: list[tuple[str, Exception]] = []

        for provider in self.order:
            try:
                result = await attempt(provider)
            except Exception as e:
                overloaded = is_overload_error(e)
                error = ProviderOverloadedError(provider, str(e)) if overloaded else e
                failures.append((provider, error))
                logger.warning(
                    "provider_failed",
                    provider=provider,
                    overloaded=overloaded,
                    error=str(e),
                )
                if self._on_failure is not None:
                    await self._on_failure(provider, e, overloaded)
                continue

            self._preferred = provider
            return result

        raise AllProvidersFailedError(failures)
