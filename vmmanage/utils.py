#!/usr/bin/env python3
"""
Common utilities for vmmanage.

This module contains shared logging, worker process management, and other utility
functions used by both the controller and the worker program.
"""

import atexit
import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Union


# Color codes for terminal output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'

    # Standard colors
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    MAGENTA = '\033[35m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'

    # Bright colors
    BRIGHT_RED = '\033[91m'
    BRIGHT_GREEN = '\033[92m'
    BRIGHT_YELLOW = '\033[93m'
    BRIGHT_BLUE = '\033[94m'
    BRIGHT_MAGENTA = '\033[95m'
    BRIGHT_CYAN = '\033[96m'


class ColorFormatter(logging.Formatter):
    """Custom formatter with color support."""

    # Color mapping for different log levels
    COLORS = {
        logging.DEBUG: Colors.DIM + Colors.WHITE,
        logging.INFO: Colors.BRIGHT_BLUE,
        logging.WARNING: Colors.BRIGHT_YELLOW,
        logging.ERROR: Colors.BRIGHT_RED,
        logging.CRITICAL: Colors.BOLD + Colors.BRIGHT_RED,
    }

    def format(self, record):
        color = self.COLORS.get(record.levelno, Colors.RESET)

        formatted = super().format(record)

        # Add colors if output is a TTY
        if hasattr(sys.stdout, 'isatty') and sys.stdout.isatty():
            level_color = color + record.levelname + Colors.RESET
            formatted = formatted.replace(record.levelname, level_color)

            # Add colored prefix based on message content
            message = str(record.msg)
            if "✅" in message or "SUCCESS" in message.upper():
                formatted = Colors.BRIGHT_GREEN + "✅ " + Colors.RESET + formatted
            elif "❌" in message or "ERROR" in message.upper():
                formatted = Colors.BRIGHT_RED + "❌ " + Colors.RESET + formatted
            elif "⚠️" in message or "WARNING" in message.upper():
                formatted = Colors.BRIGHT_YELLOW + "⚠️ " + Colors.RESET + formatted
            elif "🔌" in message or "SESSION" in message.upper():
                formatted = Colors.BRIGHT_CYAN + "🔌 " + Colors.RESET + formatted
            elif "🚀" in message or "STARTING" in message.upper():
                formatted = Colors.BRIGHT_MAGENTA + "🚀 " + Colors.RESET + formatted

        return formatted


def setup_logging(verbose: bool = False, logger_name: Optional[str] = None) -> logging.Logger:
    """
    Set up colored logging configuration.

    Args:
        verbose: Enable debug logging if True
        logger_name: Name of the logger to configure (default: root logger)

    Returns:
        Configured logger instance
    """
    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger(logger_name) if logger_name else logging.getLogger()

    formatter = ColorFormatter(
        fmt="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logger.setLevel(level)
    logger.handlers = [handler]
    if logger_name:
        logger.propagate = False

    return logger


# Global list to track temp files for cleanup
_temp_files: List[tempfile._TemporaryFileWrapper] = []


def _cleanup_tempfiles():
    """Close any log files still held open on exit."""
    for temp_file in _temp_files:
        try:
            temp_file.close()
        except Exception:
            pass  # Ignore errors during cleanup
    _temp_files.clear()


def cleanup_old_logs(state_dir: Optional[Path], max_age_days: int = 7):
    """
    Remove worker log files older than max_age_days from {state_dir}/tmp/logs.

    Args:
        state_dir: Base state directory
        max_age_days: Remove logs older than this many days
    """
    if not state_dir:
        return

    logs_dir = state_dir / "tmp" / "logs"
    if not logs_dir.exists():
        return

    logger = logging.getLogger(__name__)
    cutoff_time = time.time() - (max_age_days * 24 * 60 * 60)

    for log_file in logs_dir.glob("*.log"):
        try:
            if log_file.is_file() and log_file.stat().st_mtime < cutoff_time:
                log_file.unlink()
                logger.debug(f"Cleaned up old log file: {log_file}")
        except OSError:
            pass  # Ignore cleanup errors


def get_last_lines(file_path: Union[str, Path], num_lines: int = 20) -> List[str]:
    """
    Get the last N lines from a file.

    Args:
        file_path: Path to the file to read
        num_lines: Number of lines to retrieve from the end

    Returns:
        List of last N lines from the file
    """
    logger = logging.getLogger(__name__)

    try:
        with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.readlines()
            return lines[-num_lines:] if len(lines) > num_lines else lines
    except Exception as e:
        logger.warning(f"Failed to read log file {file_path}: {e}")
        return []


class ProcessWithOutput:
    """
    Wrapper for subprocess.Popen that captures output to tempfiles.

    Used to run the long-lived worker process: its stdout/stderr land in
    {state_dir}/tmp/logs so a failed session can be diagnosed afterwards.
    """

    def __init__(self, cmd: List[str], state_dir: Optional[Path] = None,
                 log_prefix: Optional[str] = None, debug: bool = False, **kwargs):
        """
        Start the process with tempfile capture.

        Args:
            cmd: Command to run as list of strings
            state_dir: State directory for log storage
            log_prefix: Prefix for the log file names
            debug: Whether to keep logs after cleanup()
            **kwargs: Additional keyword arguments for subprocess.Popen
        """
        logger = logging.getLogger(__name__)

        if state_dir:
            log_dir = state_dir / "tmp" / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
        else:
            log_dir = Path(tempfile.gettempdir())
        prefix = f"{log_prefix}_" if log_prefix else "vmmanage_"

        self.stdout_temp = tempfile.NamedTemporaryFile(mode='w+', prefix=f'{prefix}stdout_',
                                                       suffix='.log', delete=False, dir=log_dir)
        self.stderr_temp = tempfile.NamedTemporaryFile(mode='w+', prefix=f'{prefix}stderr_',
                                                       suffix='.log', delete=False, dir=log_dir)

        _temp_files.extend([self.stdout_temp, self.stderr_temp])

        kwargs_copy = kwargs.copy()
        if 'stdout' not in kwargs_copy:
            kwargs_copy['stdout'] = self.stdout_temp
        if 'stderr' not in kwargs_copy:
            kwargs_copy['stderr'] = self.stderr_temp
        if 'stdin' not in kwargs_copy:
            kwargs_copy['stdin'] = subprocess.DEVNULL
        if 'text' not in kwargs_copy:
            kwargs_copy['text'] = True

        logger.debug(f"Starting process: {' '.join(cmd)}")
        if debug:
            logger.debug(f"stdout log: {self.stdout_temp.name}")
            logger.debug(f"stderr log: {self.stderr_temp.name}")

        self.cmd = cmd
        self.debug = debug
        try:
            self.process = subprocess.Popen(cmd, **kwargs_copy)
        except OSError:
            self.cleanup()
            raise
        self.pid = self.process.pid

    def wait(self, timeout=None):
        """Wait for process to complete, logging its output tail on failure."""
        logger = logging.getLogger(__name__)

        returncode = self.process.wait(timeout)

        self.stdout_temp.flush()
        self.stderr_temp.flush()

        if returncode != 0:
            logger.debug(f"Process exited with return code {returncode}: {' '.join(self.cmd)}")
            if self.debug:
                logger.debug(f"stdout log path: {self.stdout_temp.name}")
                logger.debug(f"stderr log path: {self.stderr_temp.name}")

            for line in self.stderr_tail(20):
                logger.debug(f"stderr: {line}")

        return returncode

    def poll(self):
        """Check if process has terminated."""
        return self.process.poll()

    def is_alive(self) -> bool:
        """True while the process has not exited."""
        return self.process.poll() is None

    @property
    def returncode(self):
        return self.process.returncode

    def terminate(self):
        """Terminate the process (SIGTERM)."""
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass

    def kill(self):
        """Kill the process (SIGKILL)."""
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    def stderr_tail(self, num_lines: int = 5) -> List[str]:
        """Last lines the process wrote to stderr."""
        try:
            self.stderr_temp.flush()
        except ValueError:
            pass  # Already closed
        return [line.rstrip() for line in get_last_lines(self.stderr_temp.name, num_lines)
                if line.strip()]

    def cleanup(self):
        """Close the log files and remove them unless debug is enabled."""
        for temp_file in (self.stdout_temp, self.stderr_temp):
            try:
                temp_file.close()
            except OSError:
                pass
            if temp_file in _temp_files:
                _temp_files.remove(temp_file)
            if not self.debug:
                try:
                    os.unlink(temp_file.name)
                except OSError:
                    pass


# Register cleanup function to run at exit
atexit.register(_cleanup_tempfiles)
