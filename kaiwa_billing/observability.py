"""Logfire setup for processes that embed the billing engine."""

from __future__ import annotations

import logging

import logfire

from kaiwa_billing.config import Settings


def configure_observability(settings: Settings, *, level: int = logging.WARNING) -> None:
    """Configure logfire and route stdlib logging through it.

    Without a token, spans and events stay local (console only).
    """
    logfire.configure(
        token=settings.logfire_token,
        service_name=settings.app_name,
        environment=settings.environment,
        send_to_logfire="if-token-present",
    )
    logfire.instrument_pydantic(record="failure")

    logging.basicConfig(
        level=level,
        format="[%(asctime)s][%(name)s][%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logfire.LogfireLoggingHandler(),
        ],
    )
