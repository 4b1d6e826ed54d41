# core/types/status.py
"""
Core types and enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Outcome of a single task execution"""

    SUCCESS = 'SUCCESS'  # Done, nothing further to do.

    FAILURE = 'FAILURE'  # Failed; the task's retry policy decides what happens next.

    IGNORED = 'IGNORED'  # The task chose not to act. Treated like SUCCESS.


class RunnerState(str, Enum):
    """Lifecycle of a Runner loop"""

    STOPPED = 'STOPPED'
    RUNNING = 'RUNNING'
    STOPPING = 'STOPPING'
