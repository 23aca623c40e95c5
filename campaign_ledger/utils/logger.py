"""
Logging infrastructure for the campaign ledger.

Provides:
- Structured logging with millisecond timestamps
- key=value suffixes for transaction context
- Console and optional file output
- Tracking of rejections, warnings and errors for run summaries
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


class MillisecondsFormatter(logging.Formatter):
    """Custom formatter that includes milliseconds and aligns log levels."""

    def formatTime(self, record, datefmt=None):  # noqa: N802 - must match parent class method name
        """Override formatTime to include milliseconds."""
        ct = datetime.fromtimestamp(record.created)
        if datefmt and "%f" in datefmt:
            s = ct.strftime(datefmt.replace(",%f", ""))
            return s + f",{int(record.msecs):03d}"
        elif datefmt:
            return ct.strftime(datefmt)
        else:
            return ct.strftime("%Y-%m-%d %H:%M:%S") + f",{int(record.msecs):03d}"


def _format_kv(message: str, data: dict[str, Any]) -> str:
    if not data:
        return message
    formatted_data = " ".join(f"{k}={v}" for k, v in data.items())
    return f"{message} [{formatted_data}]"


class LedgerLogger:
    """
    Centralized logger for ledger operations with structured output.
    """

    def __init__(
        self,
        name: str = "campaign_ledger",
        log_level: str = "INFO",
        log_file: Optional[str] = None,
        log_dir: Optional[Path] = None,
        configure_root: bool = False,
    ):
        """
        Initialize the ledger logger.

        Args:
            name: Logger name
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_file: Optional log file name
            log_dir: Directory for log files (defaults to ./logs)
            configure_root: Route root and third-party loggers through the same format
        """
        level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        fmt_str = "%(asctime)s | %(levelname)-8s | %(filename)s:%(lineno)d | %(message)s"
        formatter = MillisecondsFormatter(fmt_str, datefmt="%Y-%m-%d %H:%M:%S,%f")

        if configure_root:
            # Service modules log through module loggers; let them reach the root handler
            self.logger.propagate = True
            self.logger.handlers.clear()
            self._configure_root_logger(level, formatter)
        else:
            self.logger.propagate = False
            if self.logger.handlers:
                self.logger.handlers.clear()
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        if log_file:
            if log_dir is None:
                log_dir = Path.cwd() / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / log_file

            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(logging.DEBUG)  # Log everything to file
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)
            self.info(f"Logging to file: {log_path}")

        self.errors: list[dict] = []
        self.warnings: list[dict] = []
        self.rejections: list[dict] = []
        self.committed = 0

    def _configure_root_logger(self, level: int, formatter: logging.Formatter):
        """Send root and third-party library logs through the unified format."""
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        root_handler = logging.StreamHandler(sys.stdout)
        root_handler.setLevel(level)
        root_handler.setFormatter(formatter)
        root_logger.addHandler(root_handler)

        # Quiet chatty client libraries
        for lib_name in ["LiteLLM", "httpx", "pymysql", "urllib3"]:
            logging.getLogger(lib_name).setLevel(logging.WARNING)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional structured data."""
        self.logger.debug(_format_kv(message, kwargs), stacklevel=2)

    def info(self, message: str, **kwargs):
        """Log info message with optional structured data."""
        self.logger.info(_format_kv(message, kwargs), stacklevel=2)

    def warning(self, message: str, **kwargs):
        """Log warning message and track for reporting."""
        message = _format_kv(message, kwargs)
        self.logger.warning(message, stacklevel=2)
        self.warnings.append({"message": message, "timestamp": datetime.now().isoformat(), "data": kwargs})

    def error(self, message: str, exception: Optional[Exception] = None, **kwargs):
        """Log error message and track for reporting."""
        if exception:
            message = f"{message} | Exception: {str(exception)}"
        message = _format_kv(message, kwargs)
        self.logger.error(message, exc_info=exception is not None, stacklevel=2)
        self.errors.append(
            {
                "message": message,
                "exception": str(exception) if exception else None,
                "timestamp": datetime.now().isoformat(),
                "data": kwargs,
            }
        )

    def log_commit(self, kind: str, transaction_id: str, campaign_id: str, amount: Any, score: Any):
        """Log a committed donation or withdrawal."""
        self.committed += 1
        self.info(
            f"Committed {kind}",
            transaction_id=transaction_id,
            campaign_id=campaign_id,
            amount=amount,
            score=score,
        )

    def log_rejection(self, kind: str, error_type: str, reason: str, **kwargs):
        """Log a rejected request (not an error: the ledger worked as intended)."""
        entry = {
            "kind": kind,
            "error_type": error_type,
            "reason": reason,
            "timestamp": datetime.now().isoformat(),
            "data": kwargs,
        }
        self.rejections.append(entry)
        self.info(f"Rejected {kind}: {error_type}", reason=reason, **kwargs)

    def get_error_summary(self) -> dict:
        """Get summary of errors and warnings for reporting."""
        return {
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
            "errors": self.errors,
            "warnings": self.warnings,
        }

    def generate_summary(self) -> dict:
        """Aggregate statistics for a CLI run or a service lifetime."""
        by_type: dict[str, int] = {}
        for rejection in self.rejections:
            by_type[rejection["error_type"]] = by_type.get(rejection["error_type"], 0) + 1

        return {
            "committed": self.committed,
            "rejections": {"total": len(self.rejections), "by_type": by_type},
            "errors": {"total": len(self.errors), "details": self.errors},
            "warnings": {"total": len(self.warnings), "details": self.warnings},
            "timestamp": datetime.now().isoformat(),
        }

    def clear_tracking(self):
        """Clear tracked errors, warnings and rejections."""
        self.errors = []
        self.warnings = []
        self.rejections = []
        self.committed = 0


_default_logger: Optional[LedgerLogger] = None


def get_logger(
    name: str = "campaign_ledger",
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    configure_root: bool = False,
) -> LedgerLogger:
    """
    Get or create the default ledger logger.

    Args:
        name: Logger name
        log_level: Logging level
        log_file: Optional log file
        configure_root: Route root/third-party loggers through the same format

    Returns:
        LedgerLogger instance
    """
    global _default_logger

    if _default_logger is None:
        _default_logger = LedgerLogger(
            name=name,
            log_level=log_level,
            log_file=log_file,
            configure_root=configure_root,
        )

    return _default_logger
