"""
Pipeline logger - Structured logging for signing/validation operations

Provides consistent, structured records (message | JSON payload) and a
log_context() helper that records START / SUCCESS / failure with duration.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class PipelineLogger:
    """Structured logger for nfe_dsig operations."""

    def __init__(self, name: str, log_dir: Optional[Path] = None, console: bool = True):
        self.name = name
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

        # Clear existing handlers
        self.logger.handlers.clear()

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(console_handler)

        # File handler if log_dir provided
        if log_dir:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / f"{name}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
            ))
            self.logger.addHandler(file_handler)

    def _emit(self, level: int, message: str, kwargs: Dict[str, Any]):
        if kwargs:
            self.logger.log(level, f"{message} | {json.dumps(kwargs, default=str, ensure_ascii=False)}")
        else:
            self.logger.log(level, message)

    def info(self, message: str, **kwargs):
        """Log info message with optional structured data."""
        self._emit(logging.INFO, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional structured data."""
        self._emit(logging.ERROR, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional structured data."""
        self._emit(logging.WARNING, message, kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional structured data."""
        self._emit(logging.DEBUG, message, kwargs)

    def log_operation(self, operation: str, status: str, **data):
        """Log an operation with structured data."""
        self.info(
            f"Operation: {operation} - {status}",
            operation=operation,
            status=status,
            timestamp=datetime.now().isoformat(),
            **data
        )

    @contextmanager
    def log_context(self, operation: str, **context):
        """Context manager for logging operation start/end."""
        start_time = datetime.now()
        self.log_operation(operation, "START", **context)

        try:
            yield
            duration = (datetime.now() - start_time).total_seconds()
            self.log_operation(operation, "SUCCESS", duration=duration, **context)
        except Exception as e:
            duration = (datetime.now() - start_time).total_seconds()
            self.error(
                f"Operation failed: {operation}",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                duration=duration,
                **context
            )
            raise


_loggers: Dict[str, PipelineLogger] = {}


def get_logger(name: str = "nfe_dsig.pipeline") -> PipelineLogger:
    """Get or create a pipeline logger (log dir from NFE_DSIG_LOG_DIR)."""
    if name not in _loggers:
        log_dir = os.environ.get("NFE_DSIG_LOG_DIR")
        _loggers[name] = PipelineLogger(name, Path(log_dir) if log_dir else None)
    return _loggers[name]
