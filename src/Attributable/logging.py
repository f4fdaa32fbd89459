# logging.py

import logging
import os
from logging.handlers import RotatingFileHandler

import structlog
from structlog.contextvars import merge_contextvars

from Attributable.config import Settings


def setup_logging(settings: Settings | None = None) -> None:
    """Initialize structlog + stdlib logging.

    If settings provided, enable rotating file logs per [logging] config.
    Defaults: INFO level, console on, file to logs/attributable.jsonl.
    """
    level_name = (settings.logging_level if settings else "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.captureWarnings(True)

    # ProcessorFormatter renders BOTH structlog and stdlib/third-party logs as JSON
    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            # Pull run-local context (e.g., import_log_id) from contextvars
            merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[
            structlog.processors.add_log_level,
            merge_contextvars,
        ],
    )

    root_handlers: list[logging.Handler] = []
    enabled = True if settings is None else settings.logging_enabled

    console_lvl_name = settings.logging_console if settings is not None else None
    if console_lvl_name is None:
        use_console = True if settings is None else settings.logging_to_console
        console_lvl_name = level_name if use_console else "NONE"
    if enabled and console_lvl_name.upper() != "NONE":
        ch = logging.StreamHandler()
        ch.setLevel(getattr(logging, console_lvl_name.upper(), level))
        ch.setFormatter(processor_formatter)
        root_handlers.append(ch)

    file_lvl_name = settings.logging_file if settings is not None else None
    if file_lvl_name is None:
        to_file = True if settings is None else settings.logging_to_file
        file_lvl_name = level_name if to_file else "NONE"
    if enabled and file_lvl_name.upper() != "NONE":
        path = settings.logging_file_path if settings is not None else "logs/attributable.jsonl"
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = RotatingFileHandler(
            path,
            maxBytes=(settings.logging_max_bytes if settings else 5_000_000),
            backupCount=(settings.logging_backup_count if settings else 5),
        )
        fh.setLevel(getattr(logging, file_lvl_name.upper(), level))
        fh.setFormatter(processor_formatter)
        root_handlers.append(fh)

    # force=True replaces any prior configuration
    logging.basicConfig(level=level, handlers=root_handlers, force=True)

    # SQLAlchemy engine logs are noisy at INFO; keep them routed but quieter
    for name in ("sqlalchemy.engine", "aiosqlite", "asyncio"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True
        lg.setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_settings(settings: Settings) -> dict:
    """Return a redacted dict of settings safe for logging.

    The database URL password and any *_token, *_secret, *_password or *_api_key
    field are replaced.
    """
    from sqlalchemy.engine import make_url

    data = settings.model_dump()
    for k in list(data.keys()):
        if k.endswith(("_token", "_secret", "_password", "_api_key")):
            data[k] = "[REDACTED]"
    try:
        url = make_url(settings.database_url)
        data["database_url"] = url.render_as_string(hide_password=True)
    except Exception:
        data["database_url"] = "[REDACTED]"
    return data
