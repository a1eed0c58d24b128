"""
Client-side progress synchronisation.

Modules:
- coordinator: optimistic completion, verification and reconciliation
- api: the narrow surface the UI calls
"""

from .api import QuestActionError, QuestCompletionAPI
from .coordinator import CompletionOutcome, CompletionStatus, SyncCoordinator

__all__ = [
    "CompletionOutcome",
    "CompletionStatus",
    "QuestActionError",
    "QuestCompletionAPI",
    "SyncCoordinator",
]
