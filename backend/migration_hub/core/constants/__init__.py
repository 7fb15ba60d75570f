"""
Constants package — re-exports from domain-specific modules.

Usage:
    from migration_hub.core.constants.migration import PHASES
    # or
    from migration_hub.core.constants import migration
Version: 1.0.0
"""

from migration_hub.core.constants import migration
from migration_hub.core.constants.migration import (
    PLATFORMS,
    PHASES,
    ALLOWED_TRANSITIONS,
    STARTABLE_STATUSES,
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
)

__all__ = [
    "migration",
    "PLATFORMS",
    "PHASES",
    "ALLOWED_TRANSITIONS",
    "STARTABLE_STATUSES",
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
]
