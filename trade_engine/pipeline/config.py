"""
Pipeline Configuration

Process-wide defaults (буферы, локи, retention, расписание).
Per-connection настройки стратегий - в pipeline/settings.py.
"""
from dataclasses import dataclass, field

from config.config import (
    PROMOTION_INTERVAL_HOURS,
    SET_EVALUATION_INTERVAL_HOURS,
    SYNC_POLL_INTERVAL_SEC,
    EXCHANGE_CALL_TIMEOUT_SEC,
    DEFAULT_ACCOUNT_BALANCE_USD,
)


@dataclass
class BufferConfig:
    """Ценовые буферы на symbol."""
    max_samples: int = 40_000        # ~11 часов при 1 тике/сек (хватает для auto 8h)
    max_age_sec: float = 9 * 3600


@dataclass
class RetentionConfig:
    """Хранение симулированных сделок."""
    trades_per_candidate: int = 250  # лимит на Base кандидата
    threshold_pct: float = 20.0      # чистка когда лимит превышен на N%
    events_days: int = 30            # pipeline events (debug trace)


@dataclass
class LockConfig:
    """Distributed lock для периодических jobs."""
    promotion_lock_ttl_sec: int = 600
    evaluation_lock_ttl_sec: int = 600


@dataclass
class ScheduleConfig:
    """Расписание jobs."""
    promotion_interval_hours: int = PROMOTION_INTERVAL_HOURS
    set_evaluation_interval_hours: int = SET_EVALUATION_INTERVAL_HOURS
    sync_poll_interval_sec: float = SYNC_POLL_INTERVAL_SEC
    retention_interval_hours: int = 24


@dataclass
class ExchangeCallConfig:
    """Outbound вызовы connector."""
    call_timeout_sec: float = EXCHANGE_CALL_TIMEOUT_SEC
    default_balance_usd: float = DEFAULT_ACCOUNT_BALANCE_USD
    balance_cache_sec: float = 60.0


@dataclass
class ReplayConfig:
    """Backtest replay для configuration sets."""
    history_hours: int = 48
    progress_step_pct: int = 5       # event/commit каждые N% прогресса


@dataclass
class PipelineConfig:
    """Главная конфигурация pipeline."""
    enabled: bool = True

    buffer: BufferConfig = field(default_factory=BufferConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    exchange: ExchangeCallConfig = field(default_factory=ExchangeCallConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)

    # PF когда нет убыточных сделок
    profit_factor_cap: float = 999.0


# Singleton instance
PIPELINE_CONFIG = PipelineConfig()


def get_config() -> PipelineConfig:
    """Получить конфигурацию."""
    return PIPELINE_CONFIG
