"""
perpx Logging System
====================

Handlers for the whole process are attached to the root logger exactly once,
by whichever entry point calls ``LogManager().configure()`` first. Engine
modules never touch handlers; they only call ``logging.getLogger(__name__)``.

Two sinks are supported:

* the console, rendered through a ``rich`` handler with a highlighter that
  knows about sides, market indices, amounts and engine error names;
* a size-rotated UTF-8 file under ``logs/``.

Both share one formatter which timestamps in UTC and strips terminal escape
sequences, since account names arrive from transaction senders.

Usage:
    >>> from perpx.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Market 0 added")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
)


PROJECT_ROOT = Path(__file__).parent.parent
LOG_FILE_PATH = PROJECT_ROOT / "logs" / "perpx.log"

PERPX_THEME = Theme({
    "perpx.amount": "cyan",
    "perpx.error_code": "bold red",
    "perpx.level_critical": "bold red reverse",
    "perpx.level_debug": "bold dim",
    "perpx.level_error": "bold red",
    "perpx.level_info": "bold green",
    "perpx.level_warning": "bold yellow",
    "perpx.logger_name": "magenta",
    "perpx.long": "bold green",
    "perpx.market": "bold magenta",
    "perpx.short": "bold red",
    "perpx.timestamp": "bold cyan",
})

# "(name)s" that lost its leading percent sign
_BARE_FIELD_RE = re.compile(r"(?<!%)\([A-Za-z_]\w*\)[A-Za-z]")
# One strftime directive, an escaped percent, or an allowed literal
_DATE_TOKEN_RE = re.compile(r"%[EO]?[-_0^#]*[A-Za-z]|%%|[0-9 \t:\-/.,TZ+]")


def _report_fallback(what: str, reason: object) -> None:
    # Logging is not usable yet, so fall back to stderr
    stamp = time.strftime(str(LOG_DATE_FORMAT.default()))
    print(f"{stamp} - perpx.logger - {what} rejected ({reason}), using default", file=sys.stderr)


class TerminalSafeFormatter(logging.Formatter):
    """Formatter whose output cannot carry ANSI sequences or control bytes."""

    _ansi_re = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b[@-Z\\-_]")
    # Tab and newline survive
    _control_re = re.compile(r"[\x00-\x08\x0B-\x1F\x7F]")

    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        return cls._control_re.sub("", cls._ansi_re.sub("", text))

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class PerpxLogHighlighter(RegexHighlighter):
    """Regex-based coloring for engine log lines."""

    base_style = "perpx."
    highlights = [
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"(?P<level_warning>\bWARNING\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<long>\bLONG\b)",
        r"(?P<short>\bSHORT\b)",
        r"(?P<market>\bmarket \d+\b)",
        r"(?P<error_code>\b[A-Z][a-zA-Z]+(?:Position|Margin|Amount|Balance|Reached|Zero|Collateral|Open)\b)",
        r"(?P<amount>(?<![\w.])-?\d+\.\d+\b)",
        r"(?P<timestamp>^(.*?)UTC)",
    ]


class LogManager:
    """
    Process-wide owner of the root logger's handlers.

    Instantiating it always returns the same object; ``configure`` only has
    an effect the first time it runs.
    """

    _instance: Optional["LogManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "LogManager":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._configured = False
                    cls._instance = instance
        return cls._instance

    @property
    def is_configured(self) -> bool:
        return self._configured

    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """
        Return ``log_format`` if a sample record formats cleanly with it,
        otherwise the default ``LOG_FORMAT``.
        """
        if not log_format:
            return str(LOG_FORMAT.default())
        log_format = str(log_format)
        sample = logging.LogRecord("perpx", logging.INFO, "", 0, "sample", (), None)
        try:
            if _BARE_FIELD_RE.search(log_format):
                raise ValueError("field without '%'")
            logging.Formatter(fmt=log_format).format(sample)
        except (ValueError, KeyError, TypeError) as e:
            _report_fallback("log format", e)
            return str(LOG_FORMAT.default())
        return log_format

    @staticmethod
    def validate_date_format(date_format: str) -> str:
        """
        Accept only strftime directives plus digits, whitespace and the usual
        separators; anything else falls back to the default ``LOG_DATE_FORMAT``.
        """
        if not date_format:
            return str(LOG_DATE_FORMAT.default())
        date_format = str(date_format)
        leftover = _DATE_TOKEN_RE.sub("", date_format)
        if leftover or not re.search(r"%[EO]?[-_0^#]*[A-Za-z]", date_format):
            _report_fallback("date format", repr(date_format))
            return str(LOG_DATE_FORMAT.default())
        return date_format

    def _formatter(self) -> TerminalSafeFormatter:
        formatter = TerminalSafeFormatter(
            fmt=self.validate_log_format(LOG_FORMAT),
            datefmt=self.validate_date_format(LOG_DATE_FORMAT) + " UTC",
        )
        # Block timestamps are UTC, so log lines are too
        formatter.converter = time.gmtime
        return formatter

    @staticmethod
    def _console_handler() -> logging.Handler:
        if not LOG_CONSOLE_HIGHLIGHTING:
            return logging.StreamHandler(sys.stdout)
        return RichHandler(
            console=Console(theme=PERPX_THEME, highlight=False),
            highlighter=PerpxLogHighlighter(),
            keywords=[],
            rich_tracebacks=True,
            show_time=False,
            show_level=False,
            show_path=False,
            markup=False,
        )

    @staticmethod
    def _file_handler(path: Path) -> logging.Handler:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            filename=str(path),
            maxBytes=LOG_MAX_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = True,
    ) -> None:
        """
        Attach the console and/or file handlers to the root logger.

        Args:
            log_level: level name; defaults to ``LOG_LEVEL`` from the environment
            log_file: rotating log path; defaults to ``logs/perpx.log``
            console_output: log to the terminal
            file_output: log to ``log_file``
        """
        with self._lock:
            if self._configured:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            formatter = self._formatter()

            handlers = []
            if console_output:
                handlers.append(self._console_handler())
            if file_output:
                handlers.append(self._file_handler(log_file or LOG_FILE_PATH))

            root = logging.getLogger()
            root.handlers.clear()
            root.setLevel(level)
            for handler in handlers:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root.addHandler(handler)

            self._configured = True

    def get_logger(self, name: str) -> logging.Logger:
        """Module logger, configuring defaults on first use."""
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


def get_logger(name: str) -> logging.Logger:
    return LogManager().get_logger(name)
