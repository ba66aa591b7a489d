"""Validation layer for caller inputs.

Validators are tagged checks that run at specific phases of a run.
Each validator inspects a phase artifact and returns structured
diagnostics; run_validators() raises the matching error class when any
of them is fatal.

    from churon.validation import InputBatch, Phase, run_validators
    batch = InputBatch.from_inputs({"x": arr})
    warnings = run_validators(Phase.STRUCTURAL, batch)

Validators are defined in submodules:
    inputs.py     — structural checks (names, duplicates, value kinds, NaN)
    signature.py  — model-aware checks (declared/required inputs) and
                    post-failure re-validation
    tensors.py    — per-tensor type/shape checks shared with the marshaller

Core types live in core.py to avoid circular imports.
"""

from .core import (  # noqa: F401
    Phase,
    Severity,
    ValidationResult,
    Validator,
    VALIDATORS,
    build_error,
    fail,
    register_validator,
    run_validators,
)
from .inputs import InputBatch, InputEntry  # noqa: F401
from .signature import SignatureCheck  # noqa: F401
from .tensors import check_shape, check_type  # noqa: F401
