import sys
import logging
import logging.handlers
from pathlib import Path
from typing import List, Optional

from .core import config
from . import cli


# --- Custom Log Formatter for Colors ---
class ColorLogFormatter(logging.Formatter):
    """Adds ANSI color codes to log messages based on level for console output."""

    GREY = "\x1b[38;20m"
    YELLOW = "\x1b[33;20m"  # Warning
    RED = "\x1b[31;20m"     # Error
    BOLD_RED = "\x1b[31;1m"  # Critical
    RESET = "\x1b[0m"

    BASE_FORMAT = '%(asctime)s [%(levelname)-7s] %(name)s: %(message)s'
    DATE_FORMAT = '%H:%M:%S'

    FORMATS = {
        logging.DEBUG: GREY + BASE_FORMAT + RESET,
        logging.INFO: BASE_FORMAT,
        logging.WARNING: YELLOW + BASE_FORMAT + RESET,
        logging.ERROR: RED + BASE_FORMAT + RESET,
        logging.CRITICAL: BOLD_RED + BASE_FORMAT + RESET
    }

    def __init__(self, use_color: bool = True):
        super().__init__(self.BASE_FORMAT, datefmt=self.DATE_FORMAT)
        self.use_color = use_color

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno, self.BASE_FORMAT) if self.use_color else self.BASE_FORMAT
        formatter = logging.Formatter(log_fmt, datefmt=self.DATE_FORMAT)
        return formatter.format(record)
# --- End Custom Log Formatter ---


def configure_logging(debug: bool = False, log_dir: Optional[Path] = None) -> None:
    """Console logging on stderr plus a rotating debug log file when the log dir is usable."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(ColorLogFormatter(use_color=sys.stderr.isatty()))
    root_logger.addHandler(console_handler)

    log_dir = config.LOG_DIR if log_dir is None else log_dir
    if not config.ensure_dir(log_dir):
        logging.getLogger(__name__).warning(f"MAIN: LOG_DIR '{log_dir}' could not be ensured. Skipping file logging.")
        return
    log_file_path = log_dir / 'phpswitch.log'
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(ColorLogFormatter.BASE_FORMAT, datefmt=ColorLogFormatter.DATE_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)
    except OSError as log_e:
        logging.getLogger(__name__).error(f"MAIN: Failed to set up file logging at {log_file_path}: {log_e}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = cli.build_parser()
    args = parser.parse_args(argv)
    configure_logging(debug=args.debug)

    logger = logging.getLogger(__name__)
    logger.debug(f"MAIN: Arguments: {args}")
    settings = config.load_settings(args.config, debug=args.debug)
    return cli.dispatch(args, settings)


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
