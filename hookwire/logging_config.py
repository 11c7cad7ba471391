"""structlog setup for hookwire processes.

Every module logs through a stdlib logger named ``hookwire.<subsystem>``
(dispatch, client, integration). Records propagate to the root console
handler. When ``log_dir`` is configured, ``hookwire.log`` collects
everything and each subsystem also gets its own rotating file.

Key functions:
    setup_logging: Configure stdlib handlers and structlog.
    sanitize_secrets: structlog processor redacting tokens.
"""

import logging
import logging.handlers
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import structlog

SUBSYSTEMS = ("dispatch", "client", "integration")

LOGGER_PREFIX = "hookwire"

_REDACTED = "***REDACTED***"

_TOKEN_RE = re.compile(
    r"bp_pat_[a-zA-Z0-9_-]{20,}"
    r"|sk-[a-zA-Z0-9_-]{20,}"
    r"|xox[abposr]-[a-zA-Z0-9-]{10,}"
    r"|Bearer\s+[a-zA-Z0-9_./-]{20,}"
)


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        return _TOKEN_RE.sub(_REDACTED, value)
    if isinstance(value, (list, tuple)):
        return type(value)(_TOKEN_RE.sub(_REDACTED, v) if isinstance(v, str) else v for v in value)
    if isinstance(value, dict):
        return {k: _TOKEN_RE.sub(_REDACTED, v) if isinstance(v, str) else v for k, v in value.items()}
    return value


def sanitize_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Redact platform, Slack and bearer tokens from logged values.

    Looks at top-level strings and one level into lists, tuples and dicts.
    """
    for key, value in event_dict.items():
        event_dict[key] = _redact(value)
    return event_dict


@dataclass
class _LogSettings:
    log_dir: Optional[Path] = None
    level: int = logging.INFO
    subsystem_levels: Mapping[str, str] = field(default_factory=dict)
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    json: bool = False

    @classmethod
    def from_config(cls, config) -> "_LogSettings":
        return cls(
            log_dir=config.log_dir,
            level=_level(config.logging_level, logging.INFO),
            subsystem_levels=config.logging_subsystem_levels,
            max_bytes=config.logging_max_file_size_mb * 1024 * 1024,
            backup_count=config.logging_backup_count,
            json=config.logging_json,
        )

    def level_for(self, subsystem: str) -> int:
        return _level(self.subsystem_levels.get(subsystem), self.level)


def _level(name: Any, default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


def _prepare_log_dir(log_dir: Optional[Path]) -> bool:
    if log_dir is None:
        return False
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"WARNING: log directory {log_dir} unusable ({exc}); logging to console only.",
              file=sys.stderr)
        return False
    return True


def _reset_logger(name: str, level: int) -> logging.Logger:
    stdlib_logger = logging.getLogger(name)
    stdlib_logger.setLevel(level)
    stdlib_logger.handlers.clear()
    stdlib_logger.propagate = True
    return stdlib_logger


def _file_handler(path: Path, level: int, settings: _LogSettings,
                  formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config=None) -> None:
    """Configure stdlib handlers and structlog.

    Called once with no config at startup (console only, loggers not
    cached) and again once settings are loaded.

    Args:
        config: Optional Config instance.
    """
    settings = _LogSettings.from_config(config) if config is not None else _LogSettings()
    use_files = _prepare_log_dir(settings.log_dir)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root = _reset_logger("", logging.DEBUG)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(settings.level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    combined = _reset_logger(LOGGER_PREFIX, logging.DEBUG)
    if use_files:
        combined.addHandler(
            _file_handler(settings.log_dir / "hookwire.log", settings.level, settings, file_formatter)
        )

    for subsystem in SUBSYSTEMS:
        level = settings.level_for(subsystem)
        sub_logger = _reset_logger(f"{LOGGER_PREFIX}.{subsystem}", level)
        if use_files:
            sub_logger.addHandler(
                _file_handler(settings.log_dir / f"{subsystem}.log", level, settings, file_formatter)
            )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            sanitize_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
