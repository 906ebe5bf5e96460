from .queue_store import QueueState, QueueStore, StateWatch, UidConflict

__all__ = ["QueueState", "QueueStore", "StateWatch", "UidConflict"]
