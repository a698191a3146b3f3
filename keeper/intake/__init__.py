"""
Intake (validated creation, cancel, re-sign) and read-side queries.
"""

from keeper.intake.queries import KeeperQueries
from keeper.intake.service import IntakeService

__all__ = ["IntakeService", "KeeperQueries"]
