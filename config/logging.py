# coding: utf-8
"""
Logging configuration with loguru for Trade Engine

EventEmitter пишет каждое pipeline событие через
logger.bind(event=..., connection_id=..., symbol=..., candidate=..., level=...).
Эти extras превращаются в префикс контекста "[conn-1 BTCUSDT real]" в
текстовых логах, отдельный JSON sink собирает только события.
"""
import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Union

import sentry_sdk
from loguru import logger

from config.config import ENVIRONMENT, LOG_DIR, LOG_LEVEL, SENTRY_DSN

# Порядок полей в префиксе контекста
CONTEXT_KEYS = ("connection_id", "symbol", "level", "candidate")

# Extras, которые уходят в Sentry как теги (фильтрация алертов по connection)
SENTRY_TAG_KEYS = ("event", "connection_id", "symbol")

TEXT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | "
    "{extra[context]}{message}"
)


def pipeline_context(record) -> None:
    """Patcher: собрать extra["context"] из pipeline extras записи."""
    extra = record["extra"]
    parts = [str(extra[key]) for key in CONTEXT_KEYS if extra.get(key)]
    extra["context"] = f"[{' '.join(parts)}] " if parts else ""


def is_pipeline_event(record) -> bool:
    return record["extra"].get("event") is not None


def setup_logging(log_dir: Optional[Union[str, Path]] = None, console: bool = True) -> Path:
    """
    Setup loguru logging configuration

    Sinks:
    - console (colored)
    - engine_*.log - all records, rotated daily
    - error_*.log - errors only, kept longer
    - events_*.jsonl - pipeline events only (serialized, for replay/audit)
    - Sentry - ERROR/CRITICAL (alerts: sync errors, invariant violations)

    Returns:
        Каталог логов
    """
    logger.remove()
    logger.configure(patcher=pipeline_context)

    logs_dir = Path(log_dir if log_dir is not None else LOG_DIR)
    if not logs_dir.is_absolute():
        logs_dir = Path(__file__).parent.parent / logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    if console:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
                "<magenta>{extra[context]}</magenta><level>{message}</level>"
            ),
            level=LOG_LEVEL,
            colorize=True,
        )

    logger.add(
        logs_dir / "engine_{time:YYYY-MM-DD}.log",
        format=TEXT_FORMAT,
        level="DEBUG",
        rotation="00:00",
        retention="7 days",
        compression="zip",
        encoding="utf-8",
    )

    logger.add(
        logs_dir / "error_{time:YYYY-MM-DD}.log",
        format=TEXT_FORMAT,
        level="ERROR",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        encoding="utf-8",
    )

    # Pipeline events: одна JSON строка на событие, extras целиком
    logger.add(
        logs_dir / "events_{time:YYYY-MM-DD}.jsonl",
        level="INFO",
        filter=is_pipeline_event,
        serialize=True,
        rotation="00:00",
        retention="30 days",
        encoding="utf-8",
    )

    if SENTRY_DSN:
        logger.add(sentry_sink, level="ERROR", format="{message}")

    # Suppress noisy third-party loggers
    logging.getLogger('sqlalchemy.engine').setLevel(logging.ERROR)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    logger.info(f"Trade Engine initialized | Environment: {ENVIRONMENT} | Log level: {LOG_LEVEL}")
    return logs_dir


def sentry_tags(extra: Dict) -> Dict[str, str]:
    return {key: str(extra[key]) for key in SENTRY_TAG_KEYS if extra.get(key)}


def sentry_sink(message):
    """
    Custom sink to send ERROR and CRITICAL logs to Sentry

    event/connection_id/symbol идут тегами, остальные extras в extras.
    """
    record = message.record
    level = record["level"].name
    extra = record["extra"]

    extras = {
        "function": record["function"],
        "file": record["file"].path,
        "line": record["line"],
    }
    extras.update({key: str(value) for key, value in extra.items() if key != "context"})
    tags = sentry_tags(extra)

    if level == "ERROR":
        sentry_sdk.capture_message(record["message"], level="error", extras=extras, tags=tags)
    elif level == "CRITICAL":
        sentry_sdk.capture_message(record["message"], level="fatal", extras=extras, tags=tags)

    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"].value)
