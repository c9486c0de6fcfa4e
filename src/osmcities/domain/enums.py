"""
Pipeline Enumerations

Core enums for type safety and clear interface definitions across the pipeline.
"""

from enum import Enum, IntEnum


class RegionLevel(IntEnum):
    """Nested administrative levels, outermost first."""
    STATE = 1           # Unidades federativas
    MICROREGION = 2     # Microrregioes
    MUNICIPALITY = 3    # Municipios

    @property
    def label(self) -> str:
        return {1: "states", 2: "microregions", 3: "municipalities"}[self.value]


class FailurePolicy(str, Enum):
    """How a fan-out stage treats failed units."""
    STRICT = "strict"             # Let siblings finish, then raise an aggregate error
    BEST_EFFORT = "best-effort"   # Log failed units and keep going


class RunOutcome(str, Enum):
    """Terminal state of one pipeline step."""
    DONE = "done"                   # One day applied (and extracted, if requested)
    UP_TO_DATE = "up-to-date"       # Cursor already current, nothing done
    NOT_AVAILABLE = "not-available" # Next diff not published, nothing done
