"""
Packaged model loading and inference.

A model bundle is a directory with ``manifest.json`` and a joblib-serialized
scikit-learn classifier. The bundle is validated once on load (checksum,
input width, class count) and then treated as an opaque runtime.

InferenceInvoker owns the loaded runtime for its lifetime:
- at most one inference in flight per invoker (accelerators are not reentrant)
- work runs on a dedicated single worker thread, never on the caller's loop
- every call has a deadline and honours the caller's cancellation token
"""

import asyncio
import hashlib
import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import joblib
import numpy as np
from pydantic import ValidationError

from matricare.domain.errors import (
    InferenceTimeoutError,
    ModelLoadError,
    ModelVersionMismatchError,
    ShapeMismatchError,
)
from matricare.domain.manifest import ModelManifest
from matricare.domain.models import FeatureVector, RawOutput
from matricare.services.common import CancellationToken, logger

MANIFEST_FILE = "manifest.json"


class ModelRuntime(Protocol):
    """Executable model with declared input/output widths."""

    input_size: int
    output_size: int

    def run(self, batch: np.ndarray) -> np.ndarray:
        """Map a (n, input_size) float32 batch to (n, output_size) probabilities."""
        ...


class SklearnRuntime:
    """Runtime over any fitted estimator exposing ``predict_proba``."""

    def __init__(self, estimator: Any) -> None:
        if not hasattr(estimator, "predict_proba"):
            raise ModelLoadError(f"{type(estimator).__name__} does not expose predict_proba")
        self.estimator = estimator
        self.input_size = int(getattr(estimator, "n_features_in_", 0))
        classes = getattr(estimator, "classes_", None)
        self.output_size = len(classes) if classes is not None else 0

    def run(self, batch: np.ndarray) -> np.ndarray:
        return np.asarray(self.estimator.predict_proba(batch), dtype=np.float64)


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 16), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class ModelBundle:
    """Manifest and runtime that were validated together."""

    manifest: ModelManifest
    runtime: ModelRuntime

    @property
    def model_version(self) -> str:
        return self.manifest.model_version

    @classmethod
    def from_runtime(cls, manifest: ModelManifest, runtime: ModelRuntime) -> "ModelBundle":
        """Pair a manifest with an already constructed runtime, checking shapes."""
        if runtime.input_size != manifest.input_size:
            raise ModelLoadError(
                f"Model takes {runtime.input_size} inputs, manifest declares {manifest.input_size}"
            )
        if runtime.output_size != manifest.output_size:
            raise ModelLoadError(
                f"Model emits {runtime.output_size} classes, manifest declares {manifest.output_size}"
            )
        return cls(manifest=manifest, runtime=runtime)

    @classmethod
    def load(cls, path: str | Path) -> "ModelBundle":
        """Load and validate a bundle directory. Any problem surfaces as ModelLoadError."""
        root = Path(path)
        log = logger.bind(component="model_bundle", path=str(root))

        try:
            manifest = ModelManifest.model_validate(
                json.loads((root / MANIFEST_FILE).read_text(encoding="utf-8"))
            )
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            log.error("model_manifest_invalid", error=str(e))
            raise ModelLoadError(f"Invalid model manifest in {root}: {e}") from e

        artifact = root / manifest.artifact
        if not artifact.is_file():
            raise ModelLoadError(f"Model artifact not found: {artifact}")

        if manifest.sha256 is not None:
            actual = file_sha256(artifact)
            if actual != manifest.sha256:
                log.error("model_checksum_mismatch", expected=manifest.sha256, actual=actual)
                raise ModelLoadError(f"Checksum mismatch for {artifact.name}: asset is corrupt")

        try:
            estimator = joblib.load(artifact)
        except Exception as e:
            log.error("model_artifact_unreadable", error=str(e))
            raise ModelLoadError(f"Cannot load model artifact {artifact.name}: {e}") from e

        bundle = cls.from_runtime(manifest, SklearnRuntime(estimator))
        log.info(
            "model_bundle_loaded",
            model_version=manifest.model_version,
            input_size=manifest.input_size,
        )
        return bundle


class InferenceInvoker:
    """
    Scoped owner of a loaded model.

    Use as an async context manager; the worker thread is released on exit
    even if inference calls were abandoned mid-flight.
    """

    def __init__(self, bundle: ModelBundle, timeout_seconds: float = 5.0) -> None:
        self.bundle = bundle
        self.timeout_seconds = timeout_seconds
        self.logger = logger.bind(component="inference_invoker", model_version=bundle.model_version)
        self._executor: ThreadPoolExecutor | None = None
        self._lock = asyncio.Lock()

    @property
    def model_version(self) -> str:
        return self.bundle.model_version

    @property
    def is_open(self) -> bool:
        return self._executor is not None

    async def __aenter__(self) -> "InferenceInvoker":
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        self.logger.info("inference_invoker_opened")
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self, drain: bool = False) -> None:
        """Release the worker. With ``drain`` the call waits for the inference in flight."""
        if drain:
            async with self._lock:
                self._shutdown()
        else:
            self._shutdown()

    def _shutdown(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
            self.logger.info("inference_invoker_closed")

    def validate(self, vector: FeatureVector) -> None:
        expected = self.bundle.manifest.input_size
        if len(vector) != expected:
            raise ShapeMismatchError(expected=expected, actual=len(vector))
        if vector.model_version != self.model_version:
            raise ModelVersionMismatchError(expected=self.model_version, actual=vector.model_version)

    async def infer(
        self, vector: FeatureVector, cancel: CancellationToken | None = None
    ) -> RawOutput:
        """Run one forward pass. Waits behind any inference already in flight."""
        if self._executor is None:
            raise RuntimeError("Invoker not open - use 'async with invoker:'")
        self.validate(vector)

        batch = vector.to_array().reshape(1, -1)
        loop = asyncio.get_running_loop()
        token = cancel or CancellationToken()

        async with self._lock:
            start = time.perf_counter()
            future = loop.run_in_executor(self._executor, self.bundle.runtime.run, batch)
            try:
                output = await token.run(asyncio.wait_for(future, timeout=self.timeout_seconds))
            except TimeoutError:
                self.logger.warning("inference_timeout", timeout_seconds=self.timeout_seconds)
                raise InferenceTimeoutError(self.timeout_seconds) from None
            elapsed = time.perf_counter() - start

        probabilities = np.asarray(output, dtype=np.float64).reshape(-1)
        self.logger.debug("inference_completed", elapsed_seconds=round(elapsed, 4))
        return RawOutput(
            probabilities=tuple(float(p) for p in probabilities),
            model_version=self.model_version,
            elapsed_seconds=elapsed,
        )

