from .checkpoint import Checkpoint, CheckpointStore, CheckpointWriteConflict

__all__ = ["Checkpoint", "CheckpointStore", "CheckpointWriteConflict"]
