from pipebot.reconcile.errors import (
    ConfigurationError,
    NotFoundError,
    NotificationFailed,
    PipebotError,
    ProviderError,
    RenderError,
    SinkError,
)
from pipebot.reconcile.orchestrator import NotificationOrchestrator
from pipebot.reconcile.references import (
    DiskReferenceStore,
    MemoryReferenceStore,
    ReferenceStore,
    decide_action,
)
from pipebot.reconcile.types import (
    ChatIdentity,
    EligibilityResult,
    MessageReference,
    PostAction,
    PullRequestThread,
)

__all__ = [
    "ChatIdentity",
    "ConfigurationError",
    "DiskReferenceStore",
    "EligibilityResult",
    "MemoryReferenceStore",
    "MessageReference",
    "NotFoundError",
    "NotificationFailed",
    "NotificationOrchestrator",
    "PipebotError",
    "PostAction",
    "ProviderError",
    "PullRequestThread",
    "ReferenceStore",
    "RenderError",
    "SinkError",
    "decide_action",
]
