from sqlalchemy.ext.declarative import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class SyncMode(str, enum.Enum):
    """Replication cycle mode"""
    FULL = "full"
    INCREMENTAL = "incremental"
    MEDIA_ONLY = "media-only"


class RunStatus(str, enum.Enum):
    """Replication run status"""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
