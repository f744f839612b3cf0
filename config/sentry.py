# coding: utf-8
"""
Sentry configuration for error monitoring and tracking
"""
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from loguru import logger

from config.config import SENTRY_DSN, ENVIRONMENT


def init_sentry() -> None:
    """
    Initialize Sentry SDK for error monitoring

    Alerts (sync errors, invariant violations) reach Sentry through the
    loguru sentry_sink, this only configures the SDK itself.
    """
    if not SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured - error monitoring disabled")
        return

    try:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            environment=ENVIRONMENT,
            integrations=[
                AsyncioIntegration(),
                SqlalchemyIntegration(),
            ],
            traces_sample_rate=0.1 if ENVIRONMENT == "production" else 1.0,
            sample_rate=1.0,
            attach_stacktrace=True,
            send_default_pii=False,
            max_breadcrumbs=50,
            before_send=before_send_hook,
        )

        logger.info(f"Sentry initialized successfully (Environment: {ENVIRONMENT})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_hook(event, hint):
    """
    Filter events before sending to Sentry

    - KeyboardInterrupt / CancelledError are shutdown noise
    - exchange credentials never leave the process
    """
    if 'exc_info' in hint:
        exc_type, exc_value, tb = hint['exc_info']

        if isinstance(exc_value, KeyboardInterrupt):
            return None
        if exc_type.__name__ == "CancelledError":
            return None

    extra = event.get('extra', {})
    for key in ("api_key", "api_secret", "passphrase"):
        if key in extra:
            extra[key] = '[Filtered]'

    return event


def set_connection_context(connection_id: str, exchange: str | None = None):
    """
    Tag Sentry events with the exchange connection they belong to

    Args:
        connection_id: Connection identifier
        exchange: Exchange name (optional)
    """
    sentry_sdk.set_tag("connection_id", connection_id)
    if exchange:
        sentry_sdk.set_tag("exchange", exchange)
