"""Storage layer - models, repositories and session management."""

from communitycoin_indexer.storage.database import DatabaseManager
from communitycoin_indexer.storage.models import (
    ActivityModel,
    Base,
    EventProcessingErrorModel,
    GroupModel,
    MemberModel,
)
from communitycoin_indexer.storage.repos import (
    ActivityDTO,
    ActivityRepository,
    EventProcessingErrorDTO,
    EventProcessingErrorRepository,
    GroupDTO,
    GroupRepository,
    MemberDTO,
    MemberRepository,
)

__all__ = [
    "ActivityDTO",
    "ActivityModel",
    "ActivityRepository",
    "Base",
    "DatabaseManager",
    "EventProcessingErrorDTO",
    "EventProcessingErrorModel",
    "EventProcessingErrorRepository",
    "GroupDTO",
    "GroupModel",
    "GroupRepository",
    "MemberDTO",
    "MemberModel",
    "MemberRepository",
]
