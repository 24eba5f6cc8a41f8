"""Structured logging setup for the copy-trading engine."""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.typing import Processor

from .config import LoggingConfig, settings


def setup_logging(config: Optional[LoggingConfig] = None, debug: Optional[bool] = None) -> None:
    """Setup structured logging with both standard and structured loggers."""
    config = config or settings.logging
    debug = settings.debug if debug is None else debug

    # Ensure log directory exists
    log_file = Path(config.log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    _setup_stdlib_logging(config)
    _setup_structlog(config, debug)


def _setup_stdlib_logging(config: LoggingConfig) -> None:
    """Setup standard library logging."""
    level = getattr(logging, config.level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    # File handler with rotation
    file_handler = logging.handlers.RotatingFileHandler(
        config.log_file,
        maxBytes=config.max_file_size,
        backupCount=config.backup_count,
    )
    file_handler.setLevel(level)

    if config.use_json:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
        )
    else:
        formatter = logging.Formatter(config.format)

    console_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Third-party noise
    logging.getLogger("websockets").setLevel(logging.INFO)
    logging.getLogger("aiohttp").setLevel(logging.INFO)


def _setup_structlog(config: LoggingConfig, debug: bool) -> None:
    """Setup structlog configuration."""

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
    ]

    if config.add_caller_info:
        processors.append(structlog.processors.CallsiteParameterAdder())

    processors.extend([
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.dict_tracebacks,
    ])

    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.level.upper())
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def short_wallet(address: Optional[str]) -> str:
    """Shorten a wallet address for log lines (``ABCD...WXYZ``)."""
    if not address:
        return "<none>"
    if len(address) <= 8:
        return address
    return f"{address[:4]}...{address[-4:]}"


class ReplicationLogger:
    """Specialized logger for replication events."""

    def __init__(self, name: str):
        self.logger = get_logger(name)

    def log_fill(
        self,
        master_wallet: str,
        symbol: str,
        trade_side: str,
        amount: Any,
        price: Any,
        **kwargs: Any,
    ) -> None:
        """Log a master fill entering replication."""
        self.logger.info(
            "Master fill",
            master=short_wallet(master_wallet),
            symbol=symbol,
            trade_side=trade_side,
            amount=str(amount),
            price=str(price),
            **kwargs,
        )

    def log_order(
        self,
        user_wallet: str,
        symbol: str,
        side: str,
        amount: str,
        price: Any,
        reduce_only: bool,
        **kwargs: Any,
    ) -> None:
        """Log a replicated order submission."""
        self.logger.info(
            "Copy order submitted",
            copier=short_wallet(user_wallet),
            symbol=symbol,
            side=side,
            amount=amount,
            price=str(price),
            reduce_only=reduce_only,
            **kwargs,
        )

    def log_skip(self, user_wallet: str, reason: str, **kwargs: Any) -> None:
        """Log a relationship skipped for a fill."""
        self.logger.info(
            "Copy skipped",
            copier=short_wallet(user_wallet),
            reason=reason,
            **kwargs,
        )

    def log_error(
        self,
        error_type: str,
        message: str,
        exception: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        """Log errors with context."""
        self.logger.error(
            "Error occurred",
            error_type=error_type,
            message=message,
            exception=str(exception) if exception else None,
            **kwargs,
        )
