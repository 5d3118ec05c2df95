"""Structured logging configuration for multisig governance.

This module provides structured JSON logging with:
- Governance context (multisig, proposal, member) carried in context variables
- Consistent log formatting across engine, lifecycle and scheduler
- Masking of signer public keys in human-readable messages
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Context variables for governance tracking
multisig_id_var: ContextVar[Optional[str]] = ContextVar("multisig_id", default=None)
proposal_id_var: ContextVar[Optional[str]] = ContextVar("proposal_id", default=None)
member_key_var: ContextVar[Optional[str]] = ContextVar("member_key", default=None)

MASK_PATTERN = "***"

_CONTEXT_FIELDS = ("multisig_id", "proposal_id", "member_key")

_RESERVED_RECORD_FIELDS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    *_CONTEXT_FIELDS,
})


def mask_key(value: Optional[str], show_chars: int = 4) -> str:
    """Mask a public key, showing only the first/last characters."""
    if not value or len(value) <= show_chars * 2:
        return MASK_PATTERN
    return f"{value[:show_chars]}...{value[-show_chars:]}"


class GovernanceContextFilter(logging.Filter):
    """Logging filter that adds governance context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.multisig_id = multisig_id_var.get()
        record.proposal_id = proposal_id_var.get()
        member_key = member_key_var.get()
        record.member_key = mask_key(member_key) if member_key else None
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(multisig_id)s/%(proposal_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(GovernanceContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(GovernanceContextFilter())
        root_logger.addHandler(file_handler)


class LogContext:
    """Context manager for temporary governance logging context."""

    def __init__(
        self,
        multisig_id: Optional[str] = None,
        proposal_id: Optional[str] = None,
        member_key: Optional[str] = None,
    ):
        self.multisig_id = multisig_id
        self.proposal_id = proposal_id
        self.member_key = member_key
        self.previous_context: dict = {}

    def __enter__(self) -> "LogContext":
        self.previous_context = {
            "multisig_id": multisig_id_var.get(),
            "proposal_id": proposal_id_var.get(),
            "member_key": member_key_var.get(),
        }

        if self.multisig_id:
            multisig_id_var.set(self.multisig_id)
        if self.proposal_id:
            proposal_id_var.set(self.proposal_id)
        if self.member_key:
            member_key_var.set(self.member_key)

        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        multisig_id_var.set(self.previous_context["multisig_id"])
        proposal_id_var.set(self.previous_context["proposal_id"])
        member_key_var.set(self.previous_context["member_key"])
