"""
Logging utilities for manifest builds and session analyses.

Module loggers follow the standard library hierarchy under 'abo_toolbox'.
ToolboxLogger additionally keeps the messages of each processing phase so
they can be inspected after a manifest build or analysis.
"""

import sys
import logging
import warnings
from typing import Dict, List, Type


def setup_logging(level: int = logging.INFO,
                  format_string: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s') -> None:
    """
    Configure logging for the toolbox package.

    Args:
        level: Logging level (default: logging.INFO)
        format_string: Format for log messages

    Example:
        >>> from abo_toolbox.utils.logging import setup_logging
        >>> import logging
        >>> setup_logging(level=logging.DEBUG)
        >>> logging.info("Fetching manifests")
    """
    logging.basicConfig(
        level=level,
        format=format_string,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


class ToolboxLogger:
    """
    Dedicated logger for toolbox operations.

    Provides structured logging with automatic prefixing for the fetch,
    build, filter and align phases, and issues catchable warnings.

    Attributes:
        logger: Python logger instance
        logs: Dictionary storing logs by phase

    Example:
        >>> logger = ToolboxLogger('abo_toolbox.manifest')
        >>> logger.log_fetch("Fetched 3 pages of EcephysUnit")
        >>> logger.log_build("Dropped 2 failed sessions")
        >>> print(logger.get_logs('build'))
        ['Dropped 2 failed sessions']
    """

    PHASES = ('fetch', 'build', 'filter', 'align')

    def __init__(self, name: str = 'abo_toolbox'):
        """
        Initialize logger.

        Args:
            name: Logger name (typically the module or session id)
        """
        self.logger = logging.getLogger(name)
        self.logs: Dict[str, List[str]] = {phase: [] for phase in self.PHASES}

    def _log(self, phase: str, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{phase.upper()}] {message}")
        self.logs[phase].append(message)

    def log_fetch(self, message: str) -> None:
        """Log message from the remote fetch phase."""
        self._log('fetch', message)

    def log_build(self, message: str) -> None:
        """Log message from the table build phase."""
        self._log('build', message)

    def log_filter(self, message: str) -> None:
        """Log message from the filtering phase."""
        self._log('filter', message)

    def log_align(self, message: str) -> None:
        """Log message from the alignment phase."""
        self._log('align', message)

    def warn(self, phase: str, message: str, category: Type[Warning] = UserWarning) -> None:
        """
        Issue a warning and record it in the given phase.

        Args:
            phase: Phase the warning belongs to
            message: Warning text
            category: Warning class callers can filter on
        """
        self._log(phase, message, level=logging.WARNING)
        warnings.warn(message, category, stacklevel=3)

    def get_logs(self, phase: str) -> list:
        """
        Get logs for a specific phase.

        Args:
            phase: Phase name ('fetch', 'build', 'filter', 'align')

        Returns:
            List of log messages for that phase
        """
        return self.logs.get(phase, [])

    def get_all_logs(self) -> dict:
        """
        Get all logs organized by phase.

        Returns:
            Dictionary mapping phase names to log message lists
        """
        return {phase: list(messages) for phase, messages in self.logs.items()}

    def clear_logs(self) -> None:
        """Clear all stored logs."""
        for phase in self.logs:
            self.logs[phase] = []
