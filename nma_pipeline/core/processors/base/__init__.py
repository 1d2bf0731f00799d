"""
Base processor components for table-in / table-out NMA stages.
"""

from .stage_processor import NmaStageProcessor

__all__ = ["NmaStageProcessor"]
