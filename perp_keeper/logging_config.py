"""
Structured Logging Configuration

Provides:
- Cycle/market/slot context carried through contextvars into every record
- JSON formatting for file logs
- Human-readable console output
- Log rotation
"""

import contextvars
import json
import logging
import logging.handlers
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union
from uuid import uuid4


cycle_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "cycle_id", default=None
)
market_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "market", default=None
)
slot_index_var: contextvars.ContextVar[Optional[int]] = contextvars.ContextVar(
    "slot_index", default=None
)


class KeeperContext:
    """Context manager binding a cycle, market or slot to log records.

    Nested contexts inherit whatever the outer one set, so a liquidation
    attempt logged inside a scan cycle carries both the cycle id and the slot.
    """

    def __init__(
        self,
        cycle_id: Optional[str] = None,
        market: Optional[str] = None,
        slot_index: Optional[int] = None,
    ):
        self.cycle_id = cycle_id
        self.market = market
        self.slot_index = slot_index
        self._tokens = []

    def __enter__(self):
        if self.cycle_id:
            self._tokens.append((cycle_id_var, cycle_id_var.set(self.cycle_id)))
        if self.market:
            self._tokens.append((market_var, market_var.set(self.market)))
        if self.slot_index is not None:
            self._tokens.append((slot_index_var, slot_index_var.set(self.slot_index)))
        return self

    def __exit__(self, *args):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def new_cycle_id() -> str:
    return uuid4().hex[:12]


def current_context() -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    cycle_id = cycle_id_var.get()
    market = market_var.get()
    slot_index = slot_index_var.get()
    if cycle_id:
        context["cycle_id"] = cycle_id
    if market:
        context["market"] = market
    if slot_index is not None:
        context["slot_index"] = slot_index
    return context


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        include_traceback: bool = True,
        include_context: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
    ):
        super().__init__()
        self.include_traceback = include_traceback
        self.include_context = include_context
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if self.include_context:
            log_data.update(current_context())

        log_data.update(self.extra_fields)

        if record.exc_info and self.include_traceback:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if hasattr(record, "extra_data"):
            log_data["extra"] = record.extra_data

        return json.dumps(log_data, default=str)


class StructuredFormatter(logging.Formatter):
    """Human-readable structured formatter for console output."""

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.colors = {
            "DEBUG": "\033[36m",
            "INFO": "\033[32m",
            "WARNING": "\033[33m",
            "ERROR": "\033[31m",
            "CRITICAL": "\033[35m",
            "RESET": "\033[0m",
        }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )

        level = record.levelname
        if self.use_color and sys.stdout.isatty():
            color = self.colors.get(level, "")
            reset = self.colors["RESET"]
            level = f"{color}{level}{reset}"

        parts = [
            f"[{timestamp}]",
            f"[{level}]",
            f"[{record.name}]",
            record.getMessage(),
        ]

        context = current_context()
        if context:
            context_parts = []
            if "cycle_id" in context:
                context_parts.append(f"cycle={context['cycle_id'][:8]}")
            if "market" in context:
                context_parts.append(f"market={context['market'][:8]}")
            if "slot_index" in context:
                context_parts.append(f"slot={context['slot_index']}")
            parts.append(f"[{', '.join(context_parts)}]")

        if record.exc_info:
            exc_text = "\n".join(traceback.format_exception(*record.exc_info))
            parts.append(f"\n{exc_text}")

        return " ".join(parts)


def setup_logging(
    log_dir: Union[str, Path] = "logs",
    log_file: str = "keeper.log",
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 50 * 1024 * 1024,
    backup_count: int = 5,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> logging.Logger:
    """
    Configure structured logging for the keeper process.

    Args:
        log_dir: Directory for log files
        log_file: Name of the log file
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting for file logs
        console_output: Enable console output
        max_bytes: Max size of log file before rotation
        backup_count: Number of backup files to keep
        extra_fields: Additional fields to include in all JSON records

    Returns:
        Configured root logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        log_path / log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    if json_format:
        file_formatter = JSONFormatter(
            include_traceback=True,
            include_context=True,
            extra_fields=extra_fields,
        )
    else:
        file_formatter = StructuredFormatter(use_color=False)
    file_handler.setFormatter(file_formatter)
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(StructuredFormatter(use_color=True))
        root_logger.addHandler(console_handler)

    # aiohttp/httpx request logs drown out keeper output at INFO
    for noisy in ("httpx", "httpcore", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    return root_logger
