"""
Sentry configuration for error tracking.

Captures unhandled exceptions from the API and the queue workers with
message/provider context.
"""
import sentry_sdk
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from notifyhub.config import Settings
from notifyhub.logging_config import get_logger

logger = get_logger(component="sentry")


def configure_sentry(settings: Settings) -> bool:
    """
    Initialize Sentry with FastAPI, arq and SQLAlchemy integrations.

    Returns False (and leaves Sentry disabled) when no DSN is configured.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return False

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            ArqIntegration(),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", environment=settings.ENVIRONMENT)
    return True


def capture_exception(exc=None, **tags):
    """
    Capture an exception to Sentry, tagged with dispatch context.

    Usage:
        try:
            ...
        except ProviderSendError as e:
            capture_exception(e, provider=e.provider)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            if value is not None:
                scope.set_tag(key, str(value))
        sentry_sdk.capture_exception(exc)
