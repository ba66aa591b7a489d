"""Session: the primary user-facing API for inference.

Wraps validation, marshalling and the engine behind a simple open/run
interface. Mirrors ONNX Runtime's InferenceSession pattern.

    session = open_session("model.onnx", providers=["cuda", "cpu"])
    result = session.run({"x": input_data})

    # With observability:
    print(session)                      # inputs, outputs, providers
    print(session.stats)                # run count and timing
    with open_session(path) as session: # native resources released on exit
        ...
"""

from __future__ import annotations

import logging
import os
import threading
import time
import warnings
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np
import onnxruntime as ort

from .config import RuntimeConfig
from .descriptors import DYNAMIC_DIM, TensorDescriptor
from .engine import CancellationToken, Engine, OrtEngine, available_providers, normalize_providers
from .errors import ChuronError, InferenceError, NonFiniteWarning, RunCancelled
from .marshal import from_native, to_native
from .validation import (
    InputBatch, Phase, Severity, SignatureCheck, ValidationResult, build_error,
    run_validators,
)

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Counters for runs made through one session."""
    runs: int = 0
    failures: int = 0
    total_ns: int = 0
    last_ns: int = 0

    @property
    def mean_ms(self) -> float:
        return self.total_ns / self.runs / 1e6 if self.runs else 0.0

    def __str__(self) -> str:
        return (f"Run stats: {self.runs} run(s), {self.failures} failure(s), "
                f"mean {self.mean_ms:.2f} ms, last {self.last_ns / 1e6:.2f} ms")


@dataclass
class ItemResult:
    """Outcome of one item in Session.run_many(): outputs or the error."""
    index: int
    outputs: dict[str, np.ndarray] | None = None
    error: ChuronError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Session:
    """A loaded model ready for repeated inference.

    Owns its engine exclusively. Runs are serialized by a per-session lock,
    so sharing one Session between threads is safe but not parallel; open
    one Session per thread for concurrent inference. Native resources are
    released by close() or by leaving a `with` block, not by garbage
    collection.
    """

    def __init__(self, engine: Engine, model_path: str,
                 config: RuntimeConfig | None = None) -> None:
        self._engine: Engine | None = engine
        self._model_path = os.path.abspath(model_path)
        self._config = config or RuntimeConfig()
        self._inputs = engine.input_descriptors()
        self._outputs = engine.output_descriptors()
        self._lock = threading.Lock()
        self._stats = RunStats()

    @property
    def model_path(self) -> str:
        """Absolute path of the model file this session was opened from."""
        return self._model_path

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def stats(self) -> RunStats:
        return self._stats

    @property
    def closed(self) -> bool:
        return self._engine is None

    def input_info(self) -> list[TensorDescriptor]:
        return list(self._inputs)

    def output_info(self) -> list[TensorDescriptor]:
        return list(self._outputs)

    def active_providers(self) -> list[str]:
        return self._require_open().active_providers()

    def run(self, inputs: Any, output_names: Sequence[str] | None = None,
            cancel: CancellationToken | None = None) -> dict[str, np.ndarray]:
        """Run inference.

        Args:
            inputs: Mapping of input name to array-like, or an iterable of
                (name, array-like) pairs. Arrays are numpy arrays, nested
                lists, scalars or strings.
            output_names: Outputs to compute. Defaults to all of them.
            cancel: Token that can abort the run from another thread.

        Returns:
            Map of output names to freshly allocated numpy arrays.

        Raises:
            ValidationError: Inputs failed validation (the engine was not
                called), or the engine failed and re-validation explains why.
            InferenceError: The engine failed for any other reason.
        """
        self._require_open()
        fail_on = _validation_severity(self._config.validation)

        try:
            hosts = self._validate(inputs, fail_on)
        except ChuronError:
            with self._lock:
                self._stats.failures += 1
            raise

        # stats and engine lifetime are only touched under the lock
        with self._lock:
            engine = self._require_open()
            try:
                native = to_native(hosts, self._inputs)
                with native:
                    t0 = time.perf_counter_ns()
                    try:
                        out = engine.execute(native, output_names, cancel)
                    except RunCancelled:
                        raise
                    except InferenceError as exc:
                        self._diagnose(hosts, exc)
                        raise
                    elapsed = time.perf_counter_ns() - t0
            except ChuronError:
                self._stats.failures += 1
                raise

            self._stats.runs += 1
            self._stats.total_ns += elapsed
            self._stats.last_ns = elapsed

        logger.debug("Ran %s in %.2f ms", os.path.basename(self._model_path),
                     elapsed / 1e6)

        with out:
            return from_native(out, self._outputs)

    def warmup(self) -> dict[str, np.ndarray]:
        """Run once on zero-filled inputs built from the input descriptors.

        Dynamic dimensions are set to 1. Useful to pay one-time engine
        allocation costs before timing-sensitive work.
        """
        feeds = {}
        for desc in self._inputs:
            if not desc.required or desc.element_type is None:
                continue
            shape = tuple(1 if d == DYNAMIC_DIM else d for d in desc.shape)
            if desc.element_type.is_text:
                feeds[desc.name] = np.full(shape, "", dtype=object)
            else:
                feeds[desc.name] = np.zeros(shape, dtype=desc.element_type.numpy_dtype)
        return self.run(feeds)

    def run_many(self, items: Iterable[Any], batch_size: int = 32,
                 output_names: Sequence[str] | None = None,
                 cancel: CancellationToken | None = None) -> list[ItemResult]:
        """Run each item in turn, in groups of `batch_size`.

        A failing item does not stop the others: its ChuronError is kept
        on the matching ItemResult. Cancellation and a closed session
        abort the whole call.
        """
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
        items = list(items)
        results: list[ItemResult] = []
        for start in range(0, len(items), batch_size):
            for index in range(start, min(start + batch_size, len(items))):
                try:
                    outputs = self.run(items[index], output_names, cancel)
                except RunCancelled:
                    raise
                except ChuronError as exc:
                    logger.warning("Item %d failed: %s", index, exc)
                    results.append(ItemResult(index, error=exc))
                else:
                    results.append(ItemResult(index, outputs=outputs))
            logger.info("Processed %d/%d item(s)", len(results), len(items))
        return results

    def estimate_memory(self) -> int:
        """Rough byte count of one run's input and output tensors.

        Dynamic dimensions count as 1 and strings as one pointer each, so
        this is a lower bound for models with dynamic shapes. Non-tensor
        slots are skipped.
        """
        total = 0
        for desc in self._inputs + self._outputs:
            if desc.element_type is None:
                continue
            count = 1
            for d in desc.shape:
                count *= 1 if d == DYNAMIC_DIM else d
            total += count * desc.element_type.itemsize
        return total

    def summary(self) -> str:
        """Human-readable description of the model's interface."""
        lines = ["ONNX Runtime Session:", f"  Model Path: {self._model_path}"]
        lines.append(f"  Inputs ({len(self._inputs)}):")
        lines.extend(f"    {d}" for d in self._inputs)
        lines.append(f"  Outputs ({len(self._outputs)}):")
        lines.extend(f"    {d}" for d in self._outputs)
        if self._engine is None:
            lines.append("  Execution Providers: (closed)")
        else:
            lines.append(f"  Execution Providers: {', '.join(self.active_providers())}")
        return "\n".join(lines)

    def close(self) -> None:
        """Release the engine. Further runs raise RuntimeError.

        Waits for an in-flight run on another thread to finish first.
        """
        with self._lock:
            if self._engine is None:
                return
            self._engine.close()
            self._engine = None
        logger.debug("Closed session for %s", self._model_path)

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __str__(self) -> str:
        return self.summary()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"Session({self._model_path!r}, {state})"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_open(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Session is closed; open a new one with open_session()")
        return self._engine

    def _validate(self, inputs: Any, fail_on: Severity | None):
        """Structural then semantic validation; returns resolved HostArrays.

        The structural phase always runs at ERROR level because it is what
        resolves caller values into typed arrays. validation='none' skips
        the warnings and the semantic phase only.
        """
        batch = InputBatch.from_inputs(inputs)
        results = run_validators(Phase.STRUCTURAL, batch,
                                 fail_on=fail_on or Severity.ERROR)
        hosts = batch.resolve()
        if fail_on is None:
            return hosts

        results += run_validators(Phase.SEMANTIC, SignatureCheck(hosts, self._inputs),
                                  fail_on=fail_on)
        _emit_warnings(results)
        return hosts

    def _diagnose(self, hosts, exc: InferenceError) -> None:
        """Re-validate after an engine failure; raise a structured error if possible."""
        results = run_validators(Phase.POST_FAILURE, SignatureCheck(hosts, self._inputs),
                                 fail_on=None)
        if not any(r.severity == Severity.ERROR for r in results):
            return
        err = build_error(Phase.POST_FAILURE, results)
        err.engine_message = exc.engine_message
        raise err from exc


def _emit_warnings(results: Iterable[ValidationResult]) -> None:
    for r in results:
        if r.severity == Severity.WARNING:
            warnings.warn(r.message, NonFiniteWarning, stacklevel=4)


def _validation_severity(validation: str) -> Severity | None:
    """Map validation preference string to fail_on severity."""
    if validation == "strict":
        return Severity.WARNING
    if validation == "normal":
        return Severity.ERROR
    if validation == "none":
        return None
    raise ValueError(
        f"Unknown validation '{validation}' "
        f"(expected 'strict', 'normal', or 'none')"
    )


# ---------------------------------------------------------------------------
# Functional API
# ---------------------------------------------------------------------------

def open_session(path: str | os.PathLike,
                 providers: str | Iterable[str] | None = None,
                 config: RuntimeConfig | None = None,
                 validation: str | None = None) -> Session:
    """Load a model and return a ready Session.

    Args:
        path: ONNX model file.
        providers: Execution providers in priority order, from
            {cpu, cuda, tensorrt, directml, onednn, coreml}. Overrides
            config.providers. None uses the config, then the engine default.
        config: Runtime options; defaults to RuntimeConfig().
        validation: "strict", "normal" or "none"; overrides config.validation.

    Raises:
        InvalidProvider: Unsupported provider (checked before the file is touched).
        ModelLoadError: The file is missing, unreadable, or not a valid model.
    """
    config = config or RuntimeConfig()
    requested = normalize_providers(providers if providers is not None else config.providers)
    config = config.with_overrides(providers=requested, validation=validation)

    path_str = os.fspath(path)
    if not str(path_str).lower().endswith(".onnx"):
        logger.warning("Model file %s does not have a .onnx extension; "
                       "it may not be a valid ONNX model", path_str)

    engine = OrtEngine.load(path_str, requested, config)
    session = Session(engine, path_str, config)
    logger.info("Opened %s (providers: %s)", session.model_path,
                ", ".join(session.active_providers()))
    return session


def run(session: Session, inputs: Any, **kwargs) -> dict[str, np.ndarray]:
    return session.run(inputs, **kwargs)


def input_info(session: Session) -> list[TensorDescriptor]:
    return session.input_info()


def output_info(session: Session) -> list[TensorDescriptor]:
    return session.output_info()


def active_providers(session: Session) -> list[str]:
    return session.active_providers()


def model_path(session: Session) -> str:
    return session.model_path


def run_many(session: Session, items: Iterable[Any], batch_size: int = 32,
             **kwargs) -> list[ItemResult]:
    return session.run_many(items, batch_size, **kwargs)


def estimate_memory(session: Session) -> int:
    return session.estimate_memory()


def runtime_info() -> dict[str, Any]:
    """Version and capabilities of the installed onnxruntime."""
    return {
        "version": ort.__version__,
        "device": ort.get_device(),
        "available_providers": available_providers(),
    }
