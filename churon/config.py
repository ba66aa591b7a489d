"""Runtime configuration.

RuntimeConfig is an explicit value passed to open_session(). Nothing in
the package reads the process environment on its own; the CLI calls
RuntimeConfig.from_env() once at startup and threads the result through.

    config = RuntimeConfig(providers=("cuda", "cpu"), intra_op_threads=4)
    session = open_session("model.onnx", config=config)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping


OPTIMIZATION_LEVELS = ("none", "basic", "extended", "all")
VALIDATION_MODES = ("strict", "normal", "none")

ENV_PREFIX = "CHURON_"


@dataclass(frozen=True)
class RuntimeConfig:
    """Options for opening a session.

    Attributes:
        providers: Execution providers in priority order ("cuda", "cpu", ...).
            None lets the engine use every provider it was built with.
        optimization: Graph optimization level.
            "none"     — Run the graph as written.
            "basic"    — Constant folding, redundant node elimination.
            "extended" — Plus operator fusions.
            "all"      — Plus layout optimizations (default).
        intra_op_threads: Threads used inside a single operator. 0 = engine default.
        inter_op_threads: Threads used across independent operators. 0 = engine default.
        log_severity: Engine log level, 0 (verbose) to 4 (fatal).
        custom_ops_library: Shared library with custom operator kernels,
            registered with the engine before the model is loaded.
        enable_profiling: Have the engine write a JSON trace per session.
        validation: How strictly to enforce input validation.
            "strict"  — Fail on WARNING or ERROR (NaN inputs become errors).
            "normal"  — Fail on ERROR only (default).
            "none"    — Skip pre-run validation; engine failures are still
                        re-validated to produce structured errors.
    """
    providers: tuple[str, ...] | None = None
    optimization: str = "all"
    intra_op_threads: int = 0
    inter_op_threads: int = 0
    log_severity: int = 3
    custom_ops_library: str | None = None
    enable_profiling: bool = False
    validation: str = "normal"

    def __post_init__(self) -> None:
        if self.optimization not in OPTIMIZATION_LEVELS:
            raise ValueError(
                f"Unknown optimization '{self.optimization}' "
                f"(expected one of {', '.join(OPTIMIZATION_LEVELS)})"
            )
        if self.validation not in VALIDATION_MODES:
            raise ValueError(
                f"Unknown validation '{self.validation}' "
                f"(expected 'strict', 'normal', or 'none')"
            )
        if self.intra_op_threads < 0 or self.inter_op_threads < 0:
            raise ValueError("Thread counts must be non-negative")
        if not 0 <= self.log_severity <= 4:
            raise ValueError(
                f"log_severity must be between 0 and 4, got {self.log_severity}"
            )
        if self.providers is not None:
            object.__setattr__(self, "providers", tuple(self.providers))

    def with_overrides(self, **changes) -> RuntimeConfig:
        """Copy with some fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeConfig:
        """Build a config from CHURON_* environment variables.

        Recognized: CHURON_PROVIDERS (comma-separated), CHURON_OPTIMIZATION,
        CHURON_INTRA_OP_THREADS, CHURON_INTER_OP_THREADS, CHURON_LOG_SEVERITY,
        CHURON_CUSTOM_OPS_LIBRARY, CHURON_PROFILING, CHURON_VALIDATION.
        Unset or empty variables keep the defaults.
        """
        env = os.environ if environ is None else environ

        def get(key: str) -> str | None:
            value = env.get(ENV_PREFIX + key, "").strip()
            return value or None

        def get_int(key: str) -> int | None:
            value = get(key)
            if value is None:
                return None
            try:
                return int(value)
            except ValueError:
                raise ValueError(
                    f"{ENV_PREFIX}{key} must be an integer, got {value!r}"
                ) from None

        providers = get("PROVIDERS")
        profiling = get("PROFILING")
        return cls().with_overrides(
            providers=tuple(p.strip() for p in providers.split(",") if p.strip())
                      if providers else None,
            optimization=get("OPTIMIZATION"),
            intra_op_threads=get_int("INTRA_OP_THREADS"),
            inter_op_threads=get_int("INTER_OP_THREADS"),
            log_severity=get_int("LOG_SEVERITY"),
            custom_ops_library=get("CUSTOM_OPS_LIBRARY"),
            enable_profiling=profiling.lower() in ("1", "true", "yes", "on")
                             if profiling else None,
            validation=get("VALIDATION"),
        )
