"""churon: ONNX Runtime sessions with validated, typed input marshalling."""

from .config import RuntimeConfig  # noqa: F401
from .descriptors import DYNAMIC_DIM, TensorDescriptor  # noqa: F401
from .dtypes import ElementType, HostArray  # noqa: F401
from .engine import (  # noqa: F401
    SUPPORTED_PROVIDERS, CancellationToken, Engine, OrtEngine,
)
from .errors import (  # noqa: F401
    ChuronError,
    DuplicateNameError,
    EmptyInputError,
    ErrorKind,
    InferenceError,
    InputSetMismatch,
    InvalidProvider,
    MissingRequiredInput,
    ModelLoadError,
    NonFiniteWarning,
    RunCancelled,
    ShapeMismatch,
    TypeMismatch,
    UnexpectedInput,
    UnnamedInputError,
    ValidationError,
)
from .session import (  # noqa: F401
    ItemResult,
    RunStats,
    Session,
    active_providers,
    estimate_memory,
    input_info,
    model_path,
    open_session,
    output_info,
    run,
    run_many,
    runtime_info,
)

__version__ = "0.1.0"
