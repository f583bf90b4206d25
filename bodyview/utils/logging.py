"""
PHI-safe logging utilities for radiograph classification.

This module provides logging functionality that ensures no Protected Health
Information (PHI) is exposed in logs. Image paths are replaced by hash-based
identifiers, and patient directory names, long numeric IDs and dates are
redacted before a record is emitted.
"""

import logging
import hashlib
import re
import sys
from pathlib import Path
from typing import Optional, Union, Dict, Any
from datetime import datetime

# Matches full paths (C:/path/file.ext or /path/file.ext) AND standalone filenames (file.ext)
_PATH_PATTERN = re.compile(
    r'(?:(?:[A-Za-z]:[\\\/]|[\\\/])?[^\\\/\s]*[\\\/])*([^\\\/\s]+\.(jpg|jpeg|png|dcm|nii))',
    flags=re.IGNORECASE
)
_PATIENT_DIR_PATTERN = re.compile(r'\bpatient\d+\b', flags=re.IGNORECASE)
_IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.dcm', '.nii')


class PHISafeFormatter(logging.Formatter):
    """Custom formatter that ensures PHI-safe logging."""

    def __init__(self, include_timestamp: bool = True):
        """
        Initialize the PHI-safe formatter.

        Args:
            include_timestamp: Whether to include timestamps in log messages
        """
        if include_timestamp:
            format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            date_fmt = "%Y-%m-%d %H:%M:%S"
        else:
            format_str = "%(name)s - %(levelname)s - %(message)s"
            date_fmt = None

        super().__init__(format_str, datefmt=date_fmt)

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record with PHI safety checks.

        Args:
            record: The log record to format

        Returns:
            Formatted log message with PHI safety
        """
        record.msg = self._sanitize_message(record.getMessage())
        record.args = None

        return super().format(record)

    def _sanitize_message(self, message: str) -> str:
        """
        Sanitize message to remove potential PHI patterns.

        Args:
            message: Original message

        Returns:
            Sanitized message
        """
        def replace_path(match):
            full_path = match.group(0)
            ext = full_path.rsplit('.', 1)[-1]
            hash_val = phi_safe_identifier(full_path)[:8]
            return f"image_{hash_val}.{ext}"

        message = _PATH_PATTERN.sub(replace_path, message)

        # MURA keeps one directory per patient (patient09734)
        message = _PATIENT_DIR_PATTERN.sub('[PATIENT_REDACTED]', message)

        # Remove potential patient IDs (numeric sequences > 5 digits), sparing dim= sizes
        message = re.sub(r'(?<!dim=)\b\d{6,}\b', '[ID_REDACTED]', message)

        # Remove potential dates of birth (various formats)
        message = re.sub(r'\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b', '[DATE_REDACTED]', message)
        message = re.sub(r'\b\d{4}[/-]\d{1,2}[/-]\d{1,2}\b', '[DATE_REDACTED]', message)

        return message


def phi_safe_identifier(input_str: Union[str, Path]) -> str:
    """
    Generate a PHI-safe identifier from an input string.

    Uses SHA-256 hashing to create a consistent, anonymized identifier
    that cannot be reversed to obtain the original input.

    Args:
        input_str: Input string or path to hash

    Returns:
        Hexadecimal hash string (first 16 characters for brevity)

    Example:
        >>> phi_safe_identifier("XR_HAND/patient09734/study1_positive/image1.png")
        '5b0c6a1de93f2c47'
    """
    if isinstance(input_str, Path):
        input_str = input_str.as_posix()

    hash_obj = hashlib.sha256(str(input_str).encode('utf-8'))
    return hash_obj.hexdigest()[:16]


class MetricsLogger:
    """Logger for performance metrics and operational data."""

    def __init__(self, logger: logging.Logger):
        """
        Initialize metrics logger.

        Args:
            logger: Base logger instance
        """
        self.logger = logger
        self.metrics: Dict[str, Any] = {
            'start_time': datetime.now().isoformat(),
            'operations': [],
            'performance': {}
        }

    def log_operation(self,
                     operation: str,
                     duration_ms: float,
                     success: bool = True,
                     details: Optional[Dict[str, Any]] = None) -> None:
        """
        Log an operation with timing and success status.

        Args:
            operation: Name of the operation
            duration_ms: Duration in milliseconds
            success: Whether operation succeeded
            details: Additional details (PHI-safe only)
        """
        op_data = {
            'operation': operation,
            'duration_ms': duration_ms,
            'success': success,
            'timestamp': datetime.now().isoformat()
        }

        if details:
            op_data['details'] = self._sanitize_details(details)

        self.metrics['operations'].append(op_data)

        status = "completed" if success else "failed"
        self.logger.info(f"Operation '{operation}' {status} in {duration_ms:.2f}ms")

    def log_performance(self, metric_name: str, value: float) -> None:
        """
        Log a performance metric.

        Args:
            metric_name: Name of the metric (e.g., 'images_per_second')
            value: Metric value
        """
        self.metrics['performance'][metric_name] = value
        self.logger.info(f"Performance metric - {metric_name}: {value:.3f}")

    def _sanitize_details(self, details: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sanitize details dictionary to ensure PHI safety.

        Args:
            details: Original details

        Returns:
            Sanitized details
        """
        sanitized = {}
        for key, value in details.items():
            if isinstance(value, (str, Path)) and str(value).lower().endswith(_IMAGE_EXTENSIONS):
                sanitized[key] = phi_safe_identifier(value)
            else:
                sanitized[key] = value
        return sanitized


def get_logger(name: str,
               level: Union[str, int] = logging.INFO,
               log_file: Optional[Path] = None,
               include_timestamp: bool = True) -> logging.Logger:
    """
    Get a configured logger with PHI-safe formatting.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging
        include_timestamp: Whether to include timestamps

    Returns:
        Configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Cluster metadata loaded")
        2024-01-01 12:00:00 - __main__ - INFO - Cluster metadata loaded
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        logger.setLevel(level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(PHISafeFormatter(include_timestamp))
        logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(PHISafeFormatter(include_timestamp))
            logger.addHandler(file_handler)

    return logger


def log_inference(logger: logging.Logger,
                  identity: Union[str, Path],
                  duration_ms: float,
                  metadata: Optional[Dict[str, Any]] = None) -> None:
    """
    Log a single embedding computation in a PHI-safe manner.

    Only whitelisted metadata keys are written; the image identity is hashed.

    Args:
        logger: Logger instance
        identity: Image identity or path (will be hashed)
        duration_ms: Time spent on inference
        metadata: Optional metadata (will be filtered)

    Example:
        >>> log_inference(logger, "image1.png", 412.0, {"embedding_dim": 2048})
        DEBUG - Ran inference on image_a3f5c8d2b1e4f6a9 in 0.412s - metadata: {'embedding_dim': 2048}
    """
    safe_id = phi_safe_identifier(identity)

    safe_metadata = {}
    if metadata:
        for key, value in metadata.items():
            if key in ['embedding_dim', 'mode', 'worker', 'model_name']:
                safe_metadata[key] = value

    log_msg = f"Ran inference on image_{safe_id} in {duration_ms / 1000.0:.3f}s"
    if safe_metadata:
        log_msg += f" - metadata: {safe_metadata}"

    logger.debug(log_msg)
