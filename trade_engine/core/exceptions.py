"""
Pipeline exceptions.

Taxonomy:
- RangeValidationError: битый range spec, отклоняется на этапе конфигурации
- TransientExchangeError: network/timeout/rate limit от connector, retry
- StatisticalInsufficiencyError: мало сделок, нормальное HOLD состояние
- InvariantViolation: fatal для кандидата, force-demote + флаг оператору
"""
from typing import Any, Optional


class PipelineError(Exception):
    """Базовое исключение pipeline."""


class RangeValidationError(PipelineError, ValueError):
    """Malformed range spec или non-terminating expansion."""

    def __init__(self, message: str, parameter: Optional[str] = None):
        self.parameter = parameter
        if parameter:
            message = f"{parameter}: {message}"
        super().__init__(message)


class SettingsValidationError(RangeValidationError):
    """Settings snapshot не прошёл нормализацию."""


class TransientExchangeError(PipelineError):
    """Network/timeout/rate-limit ошибка, сообщённая connector'ом."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ExchangeOrderRejected(PipelineError):
    """Биржа явно отклонила ордер (не retry)."""

    def __init__(self, message: str, symbol: Optional[str] = None):
        self.symbol = symbol
        super().__init__(message)


class StatisticalInsufficiencyError(PipelineError):
    """Недостаточно сделок для решения о promotion. Не ошибка, а HOLD."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"{available} trades available, {required} required")


class InvariantViolation(PipelineError):
    """
    Нарушение инварианта (например, две open позиции на один Real record).

    Кандидат принудительно демотируется и помечается для review.
    """

    def __init__(
        self,
        message: str,
        candidate_key: Optional[str] = None,
        level: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        self.candidate_key = candidate_key
        self.level = level
        self.context = context or {}
        super().__init__(message)
