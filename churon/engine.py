"""Engine boundary: the contract the session needs from an inference runtime.

Engine is the abstract handle (load, describe, execute, close); OrtEngine
implements it on top of onnxruntime.InferenceSession. Everything above
this module talks to an Engine, never to onnxruntime directly, which is
also what lets tests swap in a recording double.

Engine failures are wrapped, never swallowed: the engine's own message is
kept verbatim on the raised error and the original exception is chained.
"""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import onnxruntime as ort

from .config import RuntimeConfig
from .descriptors import TensorDescriptor
from .dtypes import element_type_of
from .errors import InferenceError, InvalidProvider, ModelLoadError, RunCancelled
from .marshal import NativeBatch, NativeTensor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution providers
# ---------------------------------------------------------------------------

# Short identifier -> onnxruntime provider name. Order is the default priority.
SUPPORTED_PROVIDERS: dict[str, str] = {
    "cuda":     "CUDAExecutionProvider",
    "tensorrt": "TensorrtExecutionProvider",
    "directml": "DmlExecutionProvider",
    "onednn":   "DnnlExecutionProvider",
    "coreml":   "CoreMLExecutionProvider",
    "cpu":      "CPUExecutionProvider",
}

_SHORT_NAMES = {v: k for k, v in SUPPORTED_PROVIDERS.items()}


def normalize_providers(providers: str | Iterable[str] | None) -> tuple[str, ...] | None:
    """Validate and lower-case a provider list.

    Raises:
        InvalidProvider: Any entry outside SUPPORTED_PROVIDERS. All bad
            entries are reported at once, along with the valid set.
    """
    if providers is None:
        return None
    if isinstance(providers, str):
        providers = [providers]
    requested = list(providers)
    invalid = [p for p in requested
               if not isinstance(p, str) or p.lower() not in SUPPORTED_PROVIDERS]
    if invalid:
        raise InvalidProvider(invalid, list(SUPPORTED_PROVIDERS))

    out: list[str] = []
    for p in requested:
        if p.lower() not in out:
            out.append(p.lower())
    return tuple(out)


def short_provider_name(ort_name: str) -> str:
    """'CUDAExecutionProvider' -> 'cuda'. Unknown names pass through."""
    return _SHORT_NAMES.get(ort_name, ort_name)


def available_providers() -> list[str]:
    """Providers compiled into the installed onnxruntime, as short names."""
    return [short_provider_name(p) for p in ort.get_available_providers()]


def _resolve_providers(providers: Sequence[str] | None) -> list[str]:
    """Map short names to onnxruntime names the installed build supports.

    None selects every supported provider the build has. Requested
    providers the build lacks are dropped with a warning; CPU is always
    appended as the last fallback.
    """
    installed = ort.get_available_providers()
    if providers is None:
        return [p for p in installed if p in _SHORT_NAMES]

    resolved = []
    for short in providers:
        name = SUPPORTED_PROVIDERS[short]
        if name in installed:
            resolved.append(name)
        else:
            logger.warning("Execution provider '%s' is not available in this "
                           "onnxruntime build; skipping", short)
    if SUPPORTED_PROVIDERS["cpu"] not in resolved:
        resolved.append(SUPPORTED_PROVIDERS["cpu"])
    return resolved


_OPTIMIZATION_LEVELS = {
    "none":     ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic":    ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all":      ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}


def _session_options(config: RuntimeConfig) -> ort.SessionOptions:
    """Translate a RuntimeConfig into onnxruntime SessionOptions."""
    options = ort.SessionOptions()
    options.graph_optimization_level = _OPTIMIZATION_LEVELS[config.optimization]
    options.intra_op_num_threads = config.intra_op_threads
    options.inter_op_num_threads = config.inter_op_threads
    options.log_severity_level = config.log_severity
    options.enable_profiling = config.enable_profiling
    if config.custom_ops_library:
        options.register_custom_ops_library(config.custom_ops_library)
    return options


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Cooperative cancellation for in-flight runs.

    Pass the token to Session.run() and call cancel() from another thread.
    A run already inside the engine is asked to stop at its next check
    point (onnxruntime's RunOptions.terminate); a run that hasn't started
    yet fails immediately without touching the engine. Either way the
    caller sees RunCancelled.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._attached: list[ort.RunOptions] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            for options in self._attached:
                options.terminate = True

    def attach(self, options: ort.RunOptions) -> None:
        with self._lock:
            self._attached.append(options)
            if self._event.is_set():
                options.terminate = True

    def detach(self, options: ort.RunOptions) -> None:
        with self._lock:
            if options in self._attached:
                self._attached.remove(options)


# ---------------------------------------------------------------------------
# Engine interface
# ---------------------------------------------------------------------------

class Engine(ABC):
    """A loaded model the session can describe and execute.

    Implementations own their native resources and release them in
    close(). execute() is not required to be thread-safe; the Session
    serializes calls.
    """

    @abstractmethod
    def input_descriptors(self) -> list[TensorDescriptor]:
        """All inputs the model accepts, required ones first."""
        ...

    @abstractmethod
    def output_descriptors(self) -> list[TensorDescriptor]:
        ...

    @abstractmethod
    def execute(self, batch: NativeBatch, output_names: Sequence[str] | None = None,
                cancel: CancellationToken | None = None) -> NativeBatch:
        """Run the graph. Raises InferenceError on any engine failure."""
        ...

    @abstractmethod
    def active_providers(self) -> list[str]:
        """Providers the engine actually selected, as short names."""
        ...

    def close(self) -> None:
        """Release native resources. Idempotent."""


class OrtEngine(Engine):
    """Engine backed by an onnxruntime.InferenceSession."""

    def __init__(self, session: ort.InferenceSession) -> None:
        self._session: ort.InferenceSession | None = session
        self._inputs = [TensorDescriptor.from_node_arg(a) for a in session.get_inputs()]
        self._inputs += [TensorDescriptor.from_node_arg(a, required=False)
                         for a in session.get_overridable_initializers()]
        self._outputs = [TensorDescriptor.from_node_arg(a) for a in session.get_outputs()]
        self._providers = [short_provider_name(p) for p in session.get_providers()]

    @classmethod
    def load(cls, path: str | os.PathLike, providers: Sequence[str] | None = None,
             config: RuntimeConfig | None = None) -> OrtEngine:
        """Load a model file.

        Args:
            path: Model file on disk.
            providers: Normalized short provider names (see
                normalize_providers), or None for the engine default.
            config: Session options; defaults to RuntimeConfig().

        Raises:
            ModelLoadError: Missing/unreadable file, or the engine rejected it.
        """
        config = config or RuntimeConfig()
        path_str = str(path)
        p = Path(path)
        if not p.exists():
            raise ModelLoadError(path_str, "model file not found")
        if p.is_dir():
            raise ModelLoadError(path_str, "path is a directory, not a model file")
        if not os.access(p, os.R_OK):
            raise ModelLoadError(path_str, "model file is not readable")

        ort_providers = _resolve_providers(providers)
        logger.debug("Loading %s with providers %s", path_str, ort_providers)
        # onnxruntime's pybind errors (Fail, InvalidProtobuf, NoSuchFile, ...)
        # derive from Exception directly
        try:
            options = _session_options(config)
            session = ort.InferenceSession(path_str, sess_options=options,
                                           providers=ort_providers)
        except Exception as exc:
            raise ModelLoadError(path_str, str(exc)) from exc
        return cls(session)

    @property
    def closed(self) -> bool:
        return self._session is None

    def input_descriptors(self) -> list[TensorDescriptor]:
        return list(self._inputs)

    def output_descriptors(self) -> list[TensorDescriptor]:
        return list(self._outputs)

    def active_providers(self) -> list[str]:
        return list(self._providers)

    def execute(self, batch: NativeBatch, output_names: Sequence[str] | None = None,
                cancel: CancellationToken | None = None) -> NativeBatch:
        if self._session is None:
            raise RuntimeError("Engine is closed")
        if cancel is not None and cancel.cancelled:
            raise RunCancelled()

        names = list(output_names) if output_names else [d.name for d in self._outputs]
        run_options = ort.RunOptions()
        if cancel is not None:
            cancel.attach(run_options)
        try:
            values = self._session.run(names, batch.feeds(), run_options)
        except Exception as exc:
            if cancel is not None and cancel.cancelled:
                raise RunCancelled(str(exc)) from exc
            raise InferenceError(str(exc), names=batch.names) from exc
        finally:
            if cancel is not None:
                cancel.detach(run_options)

        return NativeBatch([_native_output(n, v) for n, v in zip(names, values)])

    def close(self) -> None:
        self._session = None


def _native_output(name: str, value) -> NativeTensor:
    if not isinstance(value, np.ndarray):
        raise InferenceError(
            f"output '{name}' is a {type(value).__name__}, not a tensor; "
            f"sequence and map outputs are not supported",
            names=[name],
        )
    element_type = element_type_of(value)
    if element_type is None:
        raise InferenceError(f"output '{name}' has unsupported dtype {value.dtype}",
                             names=[name])
    return NativeTensor(name=name, element_type=element_type,
                        shape=tuple(int(d) for d in value.shape), buffer=value)
