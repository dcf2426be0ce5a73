"""
Error taxonomy for the risk engine.

Four families, each with its own handling rule:
- InputError: caller-fixable, never retried automatically
- ModelError: fatal per call, surfaced to the caller
- SyncError: retried by the sync queue (version conflicts go to the resolver)
- StorageError: fatal, except corrupted records which are quarantined on read
"""


class MatriCareError(Exception):
    """Root of every error raised by the engine."""


class OperationCancelledError(MatriCareError):
    """The caller abandoned the request through its cancellation token."""


# Input errors


class InputError(MatriCareError):
    """Bad input from the caller. Fix the input, do not retry."""


class IncompleteInputError(InputError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"Missing required metrics: {', '.join(self.missing)}")


class ShapeMismatchError(InputError):
    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Feature vector has {actual} slots, model expects {expected}")


class ModelVersionMismatchError(InputError):
    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Feature vector built for model {actual!r}, invoker runs {expected!r}")


class UnitConversionError(InputError):
    """Unit not recognised for the metric."""


# Model errors


class ModelError(MatriCareError):
    """Model could not produce a usable output for this call."""


class ModelLoadError(ModelError):
    """Packaged model is missing, corrupt, or has the wrong shape."""


class InferenceTimeoutError(ModelError):
    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Inference exceeded {timeout_seconds}s deadline")


class InvalidDistributionError(ModelError):
    """Model output is not a probability distribution over the risk categories."""


class FeatureUnavailableError(ModelError):
    """Risk assessment is disabled after repeated model load failures."""


# Sync errors


class SyncError(MatriCareError):
    """Replication to the remote store failed."""


class RemoteUnavailableError(SyncError):
    """Network failure talking to the remote store."""


class RemoteRejectedError(SyncError):
    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"Remote store rejected request: {status_code} {detail}".strip())


class SyncQueueFullError(SyncError):
    def __init__(self, depth: int) -> None:
        self.depth = depth
        super().__init__(f"Sync queue is full ({depth} tasks)")


class AmbiguousConflictError(SyncError):
    def __init__(self, record_id: str, side: str) -> None:
        self.record_id = record_id
        self.side = side
        super().__init__(f"Cannot resolve conflict on {record_id}: {side} copy has no timestamp")


# Storage errors


class StorageError(MatriCareError):
    """Local persistence failed."""


class DurabilityError(StorageError):
    """A write could not be made durable."""


class CorruptRecordError(StorageError):
    def __init__(self, offset: int, reason: str) -> None:
        self.offset = offset
        self.reason = reason
        super().__init__(f"Corrupt log entry at byte {offset}: {reason}")


class DuplicateRecordError(StorageError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id} already exists")


class RecordNotFoundError(StorageError):
    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id} not found")
