"""
Logging Utilities for the Feature Extraction Pipeline

This module provides hierarchical logging that tracks function call flows and
execution times throughout the extraction pipeline.

The NestedLogger class creates indented log output that visually represents the
call stack depth, so a batch run over many features reads as a tree:

    10:30:45.123 Started extract_features
        10:30:45.124 Started estimate_monitoring_windows
            10:30:45.300 Monitoring window coverage: 96.43% (2197 stays without heart rate)
        10:30:45.301 Finished estimate_monitoring_windows

Data-quality findings (inverted windows, fallback use, low coverage) are written
with log_warning at the current depth so they appear next to the step that
produced them.
"""
from datetime import datetime


class NestedLogger:
    """
    A logger that provides hierarchical indentation to visualize function call nesting.

    Each log_start increases indentation and each log_end decreases it. Messages
    logged in between are printed at the current depth.

    Attributes:
        _nesting_level (int): Current indentation level (0 = no indentation)
    """

    def __init__(self):
        """Initialize the logger with zero nesting level."""
        self._nesting_level = 0

    def _get_timestamp(self) -> str:
        """
        Get formatted timestamp with millisecond precision.

        Returns:
            str: Timestamp in format 'HH:MM:SS.mmm'
        """
        return datetime.now().strftime('%H:%M:%S.%f')[:-3]

    def _get_indent(self) -> str:
        """
        Get indentation string based on current nesting level.

        Returns:
            str: String of spaces (4 spaces per nesting level)
        """
        return "    " * self._nesting_level

    def _emit(self, message: str) -> None:
        print(f"{self._get_indent()}{self._get_timestamp()} {message}")

    def log_start(self, function_name: str) -> None:
        """
        Log the start of a function execution and increase the nesting level.

        Args:
            function_name (str): Name of the function being started
        """
        self._emit(f"Started {function_name}")
        self._nesting_level += 1

    def log_end(self, function_name: str) -> None:
        """
        Decrease the nesting level and log the end of a function execution.

        Args:
            function_name (str): Name of the function being completed
        """
        if self._nesting_level > 0:
            self._nesting_level -= 1
        self._emit(f"Finished {function_name}")

    def log_info(self, message: str) -> None:
        """Log an informational message at the current nesting level."""
        self._emit(message)

    def log_warning(self, message: str) -> None:
        """
        Log a data-quality warning at the current nesting level.

        Warnings never interrupt the batch; they report per-stay problems that
        were absorbed into absent results.
        """
        self._emit(f"WARNING {message}")


# Global logger instance shared by all modules so nesting state stays consistent
logger = NestedLogger()
