from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class ReportStatus(enum.IntEnum):
    """Per-row delivery status stored in the source tables' report_status column"""
    PENDING = 0
    PROCESSING = 1
    SUCCESS = 2
    FAILED = 3


class RunKind(str, enum.Enum):
    """Kind of table run a checkpoint tracks"""
    FULL = "FULL"
    INCREMENTAL = "INCR"


class CheckpointStatus(str, enum.Enum):
    """Checkpoint lifecycle: RUNNING -> COMPLETED | FAILED, RUNNING <-> PAUSED"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAUSED = "PAUSED"
