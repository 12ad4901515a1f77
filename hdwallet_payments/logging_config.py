"""
Logging for the HD Wallet Payments gateway.

Every module logs through ``logging.getLogger(__name__)``. This module owns the
handler setup: a console handler (optionally colored), an optional rotating
file, and a ``SecretRedactor`` filter on every handler so seed phrases, child
private keys and RPC project keys never reach a log sink.

Chain-facing events (provider switches, submissions, receipts, restores) are
also written as ``key=value`` lines on the ``hdwallet_payments.blockchain``
logger so they can be routed or grepped separately.
"""

import logging
import logging.handlers
import os
import re
import sys
from pathlib import Path
from typing import Any, Optional

PACKAGE_LOGGER_NAME = "hdwallet_payments"
BLOCKCHAIN_LOGGER_NAME = "hdwallet_payments.blockchain"
REDACTED = "***REDACTED***"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class SecretRedactor(logging.Filter):
    """Masks wallet secrets in log messages and their arguments."""

    # Each pattern keeps group 1 and masks the rest of the match.
    SECRET_PATTERNS = [
        re.compile(r"((?:private[_ ]?key|privateKey|signing key)[\"']?\s*[:=]\s*[\"']?)(?:0x)?[a-fA-F0-9]{64}", re.IGNORECASE),
        re.compile(r"((?:encrypted)?mnemonic[\"']?\s*[:=]\s*[\"']?)[a-z]+(?: [a-z]+){11,23}", re.IGNORECASE),
        re.compile(r"((?:encrypted_?mnemonic|encryptedMnemonic)[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+", re.IGNORECASE),
        re.compile(r"(infura\.io/v3/)[a-zA-Z0-9]+", re.IGNORECASE),
        re.compile(r"(alchemy\.com/v2/)[a-zA-Z0-9\-_]+", re.IGNORECASE),
        re.compile(r"(quiknode\.pro/)[a-zA-Z0-9]+", re.IGNORECASE),
        re.compile(r"((?:api_?key|key|token)=)[^&\s]+", re.IGNORECASE),
    ]

    @classmethod
    def redact(cls, text: str) -> str:
        for pattern in cls.SECRET_PATTERNS:
            text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        # Redact the rendered message; a key passed as an argument is only
        # recognizable next to its label.
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.redact(message)
        record.args = None
        return True


class ColoredFormatter(logging.Formatter):
    """Colors the level name for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        color = self.COLORS.get(levelname)
        if color:
            record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _normalize_level(level: str) -> str:
    level = (level or "INFO").upper()
    if level not in LEVELS:
        logging.getLogger(__name__).warning("Unknown log level %r, using INFO", level)
        return "INFO"
    return level


def _redact_existing_handlers() -> None:
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, SecretRedactor) for f in handler.filters):
            handler.addFilter(SecretRedactor())


def _file_handler(log_file: str, level: int, fmt: str, max_bytes: int, backup_count: int) -> logging.Handler:
    path = Path(log_file)
    if path.exists() and path.is_dir():
        raise ValueError(f"Log file path is a directory: {log_file}")
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    handler.addFilter(SecretRedactor())
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: str = DEFAULT_FORMAT,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    use_colors: bool = True,
    clear_handlers: bool = False,
) -> None:
    """
    Configure root logging for the gateway.

    Colors are only used when stderr is a terminal and ``HDWalletPayments_LogColors``
    does not disable them. Raises ``ValueError`` or ``OSError`` when the log file
    cannot be opened; the console handler is already installed by then.
    """
    level = _normalize_level(level)
    numeric_level = getattr(logging, level)
    use_colors = use_colors and _env_flag("HDWalletPayments_LogColors", True) and sys.stderr.isatty()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    if clear_handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(ColoredFormatter(log_format) if use_colors else logging.Formatter(log_format))
    console.addFilter(SecretRedactor())
    root_logger.addHandler(console)

    if log_file:
        root_logger.addHandler(_file_handler(log_file, numeric_level, log_format, max_bytes, backup_count))

    logging.getLogger(PACKAGE_LOGGER_NAME).setLevel(numeric_level)
    logging.getLogger(__name__).debug("Logging configured: level=%s file=%s colors=%s", level, log_file, use_colors)


def get_logger(name: str) -> logging.Logger:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("Logger name must be a non-empty string")
    return logging.getLogger(name)


def log_blockchain_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Write ``[event] key=value ...`` on the blockchain logger, skipping ``None`` fields."""
    rendered = " ".join(f"{key}={fields[key]}" for key in sorted(fields) if fields[key] is not None)
    logging.getLogger(BLOCKCHAIN_LOGGER_NAME).log(level, "[%s] %s", event, rendered)


def setup_default_logging() -> None:
    """Environment-driven setup run at import; leaves an already configured root logger alone."""
    if logging.getLogger().handlers:
        _redact_existing_handlers()
        return
    try:
        setup_logging(
            level=os.environ.get("HDWalletPayments_LogLevel", "INFO"),
            log_file=os.environ.get("HDWalletPayments_LogFile"),
        )
    except (OSError, ValueError) as e:
        setup_logging(level="INFO", use_colors=False, clear_handlers=True)
        logging.getLogger(__name__).error("Failed to configure log file: %s. Using console logging.", e)


setup_default_logging()
