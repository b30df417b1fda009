"""
Logging setup for the receipt verifier.

Every pipeline stage emits one snake_case event (receipt_load_success,
receipt_signature_invalid, entitlements_reconciled, ...). A validation run
binds its run_id so the events of one run can be grouped.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from iap_receipt.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name, version and environment on every event."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.version
    event_dict["environment"] = settings.environment
    return event_dict


def setup_logging() -> None:
    """
    Route structlog through stdlib logging on stdout.

    With ``IAP_LOG_FORMAT=json`` a failed signature check renders as:
    {
        "event": "receipt_signature_invalid",
        "reason": "untrusted_chain",
        "level": "warning",
        "logger": "iap_receipt.services.signature",
        "service": "iap-receipt",
        "environment": "production",
        "run_id": "5f0c...",
        "timestamp": "2025-01-08T12:00:00.123456Z"
    }
    Any other format uses the coloured console renderer.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Logger for a verifier module.

    Usage:
        logger = get_logger(__name__)
        logger.info("receipt_read_success", product_ids=["com.testapp.month"])
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind fields to every event logged inside the block.

    Usage:
        with log_context(run_id=uuid4().hex):
            manager.process_receipt()
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
