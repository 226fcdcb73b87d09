"""Logging setup shared by the CLI and dispatcher hosts.

Modules log event names (``schedule_claimed``, ``schedule_execution_failed``)
and put identifiers in ``extra`` under dotted keys such as ``schedule.id``,
``group.id`` and ``error.message``. The console shows the event; the JSONL
file keeps the structured fields.

Levels:
- DEBUG: tick decisions, lost lock races, wizard transitions
- INFO: schedules created, claimed and completed
- WARNING: unreadable records, failed notifications
- ERROR: executor and storage failures
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TextIO

DEFAULT_LOG_RETENTION_DAYS = 7
LOG_LEVEL_ENV = "CADENCE_LOG_LEVEL"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

DEFAULT_REDACT_PATTERNS: list[str] = [
    r"\b(sk-[A-Za-z0-9_-]{20,})\b",
    r"\b(ghp_[A-Za-z0-9]{20,})\b",
    # Chat bot tokens: <numeric id>:<secret>
    r"\b(\d{8,}:[A-Za-z0-9_-]{30,})\b",
    # Account private keys in AIP-80 form
    r"\b(ed25519-priv-0x[0-9a-f]{64})\b",
    r"\b[A-Z0-9_]+(?:KEY|TOKEN|SECRET|PASSWORD|PASSWD|JWT)\s*[=:]\s*([^\s\"']{8,})",
    r"\bBearer\s+([A-Za-z0-9._\-+=]{20,})\b",
    r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]+?-----END [A-Z ]*PRIVATE KEY-----",
]

NOISY_LOGGERS = [
    "aiosqlite",
    "sqlalchemy.engine",
    "httpx",
    "httpcore",
]


@dataclass
class SecretRedactor:
    """Masks credentials in log text, keeping the first and last four characters."""

    patterns: list[re.Pattern[str]] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.patterns:
            self.patterns = [
                re.compile(p, re.IGNORECASE) for p in DEFAULT_REDACT_PATTERNS
            ]

    def redact(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(_mask, text)
        return text

    def redact_value(self, value: Any) -> Any:
        """Redact strings nested anywhere inside ``value``."""
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {k: self.redact_value(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self.redact_value(v) for v in value]
        if value is None or isinstance(value, bool | int | float):
            return value
        return self.redact(str(value))


def _mask(match: re.Match[str]) -> str:
    whole = match.group(0)
    if "PRIVATE KEY-----" in whole:
        lines = whole.strip().splitlines()
        return f"{lines[0]}\n...redacted...\n{lines[-1]}"

    secret = match.group(1) if match.lastindex else whole
    if "..." in secret:
        return whole
    masked = "***" if len(secret) < 12 else f"{secret[:4]}...{secret[-4:]}"
    return whole.replace(secret, masked)


_redactor = SecretRedactor()


def prune_old_logs(
    logs_dir: Path,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    suffix: str = ".jsonl",
) -> int:
    """Delete ``*.jsonl`` files last modified before the retention window.

    Returns:
        Number of files deleted.
    """
    if not logs_dir.is_dir():
        return 0

    cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).timestamp()
    deleted = 0
    for path in logs_dir.glob(f"*{suffix}"):
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink()
                deleted += 1
        except OSError:
            logging.getLogger(__name__).debug("log_prune_failed", exc_info=True)
    return deleted


def _component(logger_name: str) -> str:
    """``cadence.scheduling.dispatcher`` -> ``scheduling``; ``aiosqlite.core`` -> ``aiosqlite``."""
    head, _, rest = logger_name.partition(".")
    if head == "cadence" and rest:
        return rest.split(".", 1)[0]
    return head


_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "component", "taskName"}


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class JSONLHandler(logging.Handler):
    """Append one JSON object per record to ``<logs_dir>/YYYY-MM-DD.jsonl``.

    The file rolls over at UTC midnight, and each rollover prunes files older
    than ``retention_days``. Message, traceback and ``extra`` values are all
    passed through the secret redactor.
    """

    def __init__(
        self,
        logs_dir: Path,
        retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    ):
        super().__init__()
        logs_dir.mkdir(parents=True, exist_ok=True)
        self._logs_dir = logs_dir
        self._retention_days = retention_days
        self._day: str | None = None
        self._stream: TextIO | None = None

    def _stream_for(self, day: str) -> TextIO:
        if self._stream is None or day != self._day:
            if self._stream is not None:
                self._stream.close()
            self._stream = (self._logs_dir / f"{day}.jsonl").open("a", encoding="utf-8")
            self._day = day
            prune_old_logs(self._logs_dir, self._retention_days)
        return self._stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            now = datetime.now(UTC)
            entry: dict[str, Any] = {
                "ts": now.isoformat(),
                "level": record.levelname,
                "component": _component(record.name),
                "logger": record.name,
                "message": _redactor.redact(record.getMessage()),
            }
            if record.exc_info:
                formatter = self.formatter or logging.Formatter()
                entry["exception"] = _redactor.redact(
                    formatter.formatException(record.exc_info)
                )
            if extra := _extra_fields(record):
                entry["extra"] = _redactor.redact_value(extra)

            stream = self._stream_for(now.strftime("%Y-%m-%d"))
            stream.write(json.dumps(entry, default=str) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        super().close()


class ComponentFormatter(logging.Formatter):
    """Adds ``%(component)s``: the subpackage a cadence logger belongs to."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = _component(record.name)
        return super().format(record)


def _resolve_level(level: str | None) -> int:
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "INFO")
    level = level.upper()
    return getattr(logging, level if level in _LEVELS else "INFO")


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    log_to_file: bool = False,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
) -> None:
    """Install root handlers. Call once per process, before starting a dispatcher.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Defaults to ``$CADENCE_LOG_LEVEL``,
            then INFO.
        use_rich: Render console output with Rich.
        log_to_file: Also write JSONL files under ``$CADENCE_HOME/logs``.
        retention_days: How long JSONL files are kept.
    """
    from cadence.config.paths import get_logs_path

    log_level = _resolve_level(level)

    console_handler: logging.Handler
    if use_rich:
        from rich.logging import RichHandler

        console_handler = RichHandler(show_path=False, markup=False)
        console_handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            ComponentFormatter(
                "%(asctime)s | %(levelname)-8s | %(component)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    handlers = [console_handler]

    if log_to_file:
        file_handler = JSONLHandler(get_logs_path(), retention_days=retention_days)
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
