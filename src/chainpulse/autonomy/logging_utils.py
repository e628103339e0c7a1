import logging
import os
import sys
from .config import Config


_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}
_LOG_FORMAT = "%(asctime)sZ %(levelname)s %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    force = os.getenv("FORCE_COLOR", "").strip().lower()
    if force in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        level_name = record.levelname.upper()
        color = _COLORS.get(level_name, "")
        if not color:
            return message

        # Tag scheduler phases so a scrolling console stays scannable.
        if message.startswith("Quota "):
            painted = f"{_BOLD}{_CYAN}[QUOTA] {message}{_RESET}"
        elif message.startswith("Policy "):
            painted = f"{_BOLD}{_MAGENTA}[POLICY] {message}{_RESET}"
        elif message.startswith("Budget blocked"):
            painted = f"{_BOLD}{_YELLOW}[BUDGET] {message}{_RESET}"
        elif message.startswith("Budget "):
            painted = f"{_DIM}{color}[BUDGET] {message}{_RESET}"
        elif message.startswith("Digest "):
            painted = f"{_CYAN}[DIGEST] {message}{_RESET}"
        elif message.startswith("Governor blocked"):
            painted = f"{_BOLD}{_RED}[GOVERNOR] {message}{_RESET}"
        elif message.startswith("Governor "):
            painted = f"{_BOLD}{_YELLOW}[GOVERNOR] {message}{_RESET}"
        elif message.startswith("Post success") or message.startswith("Reply success"):
            painted = f"{_BOLD}{_GREEN}[SUCCESS] {message}{_RESET}"
        elif message.startswith("Post "):
            painted = f"{_MAGENTA}[POST] {message}{_RESET}"
        elif message.startswith("Engage "):
            painted = f"{_CYAN}[ENGAGE] {message}{_RESET}"
        elif "Sleeping seconds=" in message:
            painted = f"{_DIM}{color}{message}{_RESET}"
        else:
            painted = f"{color}{message}{_RESET}"
        return painted


def setup_logging(cfg: Config) -> logging.Logger:
    level = getattr(logging, cfg.log_level, logging.INFO)
    logger = logging.getLogger("chainpulse.autonomy")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)

    stream_handler = logging.StreamHandler()
    if _stream_supports_color():
        stream_handler.setFormatter(ColorFormatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
    else:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
