"""
Engine services.

This package contains the pipeline components, each usable on its own, and
the RiskAssessmentService in ``matricare.services.engine`` that wires them
together.
"""

from .classifier import ClassifierConfig, RiskClassifier
from .common import CancellationToken, Result
from .conflicts import ConflictResolver, Resolution
from .features import FeatureVectorBuilder
from .inference import InferenceInvoker, ModelBundle, ModelRuntime, SklearnRuntime
from .record_store import LocalRecordStore, RecordFilter
from .sync_queue import BackoffPolicy, SyncQueue, SyncQueueConfig, SyncReport

__all__ = [
    "BackoffPolicy",
    "CancellationToken",
    "ClassifierConfig",
    "ConflictResolver",
    "FeatureVectorBuilder",
    "InferenceInvoker",
    "LocalRecordStore",
    "ModelBundle",
    "ModelRuntime",
    "RecordFilter",
    "Resolution",
    "Result",
    "RiskClassifier",
    "SklearnRuntime",
    "SyncQueue",
    "SyncQueueConfig",
    "SyncReport",
]
