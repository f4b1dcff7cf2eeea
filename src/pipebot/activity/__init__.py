from pipebot.activity.model import ActivityRecord, ActivityStep, PipelineState

__all__ = [
    "ActivityRecord",
    "ActivityStep",
    "PipelineState",
]
