from pipebot.storage.activity_store import ActivityStore, UpsertResult

__all__ = ["ActivityStore", "UpsertResult"]
