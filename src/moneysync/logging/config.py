"""Root logger setup for MoneySync.

Components log through module-level ``logging`` loggers; this module attaches
the console and rotating file handlers once, for the CLI, the job worker or an
embedding application.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler

from moneysync.config import LoggingConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CLI_LOG_FORMAT = "%(message)s"


def setup_logging(
    config: LoggingConfig | None = None,
    cli_mode: bool = False,
    verbose: bool = False,
    force: bool = False,
) -> None:
    """Configure the root logger.

    Console output goes to stderr so that command output on stdout (tables,
    job ids) stays machine readable.

    Args:
        config: Logging settings, usually ``MoneySyncSettings.logging``;
            defaults apply if None
        cli_mode: Print bare messages on the console
        verbose: Log at DEBUG regardless of ``config.level``
        force: Replace handlers already attached to the root logger
    """
    config = config or LoggingConfig()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        logging.Formatter(CLI_LOG_FORMAT if cli_mode else LOG_FORMAT)
    )
    handlers: list[logging.Handler] = [console_handler]

    if config.log_to_file:
        config.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.log_file_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.level),
        handlers=handlers,
        force=force,
    )

    # Request-level logs from the HTTP stack
    for name in ("httpx", "httpcore", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
