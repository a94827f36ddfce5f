"""
Avatar Video Pipeline

Persisted, resumable orchestration of the provider's chained jobs:
  Recognition → (multi-subject) Subject Selection → Generation
"""

from .orchestrator import AvatarTaskService, PollPolicy
from .routes import avatar_router
from .models import AvatarTask, TaskStage, FailureKind

__all__ = [
    "AvatarTaskService",
    "PollPolicy",
    "avatar_router",
    "AvatarTask",
    "TaskStage",
    "FailureKind",
]
