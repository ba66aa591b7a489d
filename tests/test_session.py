"""Session API tests against a recording engine double.

The EchoEngine records every execute() call, so these tests can assert
not only which error is raised but that validation failures never reach
the engine.
"""

import threading
import time

import numpy as np
import pytest

import churon
from churon.config import RuntimeConfig
from churon.descriptors import DYNAMIC_DIM, TensorDescriptor
from churon.dtypes import ElementType
from churon.engine import CancellationToken
from churon.errors import (
    DuplicateNameError, EmptyInputError, ErrorKind, InferenceError,
    InputSetMismatch, MissingRequiredInput, NonFiniteWarning, RunCancelled,
    ShapeMismatch, TypeMismatch, UnexpectedInput, ValidationError,
)
from churon.session import Session

from conftest import EchoEngine


def _session(engine, **config) -> Session:
    return Session(engine, "echo.onnx", RuntimeConfig(**config))


class TestSessionBasic:

    def test_run_echoes_inputs(self, echo_engine, echo_inputs):
        session = _session(echo_engine)
        result = session.run(echo_inputs)
        assert list(result) == ["x_out", "ids_out", "text_out"]
        np.testing.assert_array_equal(result["x_out"], echo_inputs["x"])
        assert list(result["text_out"]) == ["hello", "안녕하세요"]

    def test_accepts_pairs(self, echo_engine, echo_inputs):
        session = _session(echo_engine)
        result = session.run(list(echo_inputs.items()))
        assert set(result) == {"x_out", "ids_out", "text_out"}

    def test_output_names_subset(self, echo_engine, echo_inputs):
        session = _session(echo_engine)
        result = session.run(echo_inputs, output_names=["ids_out"])
        assert list(result) == ["ids_out"]

    def test_reuse_across_inputs(self, echo_engine, echo_inputs):
        session = _session(echo_engine)
        for n in (1, 3, 5):
            inputs = {
                "x": np.random.rand(n, 3).astype(np.float32),
                "ids": np.arange(n),
                "text": ["t"] * n,
            }
            result = session.run(inputs)
            np.testing.assert_array_equal(result["x_out"], inputs["x"])
        assert session.stats.runs == 3
        assert session.stats.failures == 0
        assert len(echo_engine.calls) == 3

    def test_descriptors_and_metadata(self, echo_engine):
        session = _session(echo_engine)
        assert [d.name for d in session.input_info()] == ["x", "ids", "text"]
        assert [d.name for d in session.output_info()] == ["x_out", "ids_out", "text_out"]
        assert session.active_providers() == ["cpu"]
        assert session.model_path.endswith("echo.onnx")

    def test_summary(self, echo_engine):
        text = str(_session(echo_engine))
        assert "Inputs (3):" in text
        assert "x: batch x 3 (float)" in text
        assert "Execution Providers: cpu" in text

    def test_warmup_uses_zero_inputs(self, echo_engine):
        session = _session(echo_engine)
        session.warmup()
        call = echo_engine.calls[0]
        assert call["x"].shape == (1, 3)
        assert call["ids"].dtype == np.int64
        assert list(call["text"]) == [""]


class TestValidationBeforeEngine:
    """Validation failures are reported before the engine is touched."""

    def test_duplicate_names(self, echo_engine):
        session = _session(echo_engine)
        with pytest.raises(DuplicateNameError) as exc:
            session.run([("x", [[1.0, 2.0, 3.0]]), ("x", [[4.0, 5.0, 6.0]])])
        assert exc.value.names == ("x",)
        assert echo_engine.calls == []

    def test_empty(self, echo_engine):
        session = _session(echo_engine)
        with pytest.raises(EmptyInputError):
            session.run({})
        assert echo_engine.calls == []
        assert session.stats.failures == 1

    def test_missing_required(self, echo_engine, echo_inputs):
        del echo_inputs["ids"]
        session = _session(echo_engine)
        with pytest.raises(MissingRequiredInput) as exc:
            session.run(echo_inputs)
        assert exc.value.names == ("ids",)
        assert echo_engine.calls == []

    def test_missing_and_unexpected(self, echo_engine):
        session = _session(echo_engine)
        with pytest.raises(InputSetMismatch) as exc:
            session.run({"wrong_name": [[1, 2]]})
        err = exc.value
        assert err.names_for(ErrorKind.MISSING_REQUIRED) == ("x", "ids", "text")
        assert err.names_for(ErrorKind.UNEXPECTED_INPUT) == ("wrong_name",)
        assert echo_engine.calls == []

    def test_shape_mismatch(self, echo_engine, echo_inputs):
        echo_inputs["x"] = np.zeros((2, 4), dtype=np.float32)
        session = _session(echo_engine)
        with pytest.raises(ShapeMismatch) as exc:
            session.run(echo_inputs)
        assert exc.value.expected == (-1, 3)
        assert exc.value.actual == (2, 4)
        assert echo_engine.calls == []

    def test_nan_warns_and_runs(self, echo_engine, echo_inputs):
        echo_inputs["x"][0, 0] = np.nan
        session = _session(echo_engine)
        with pytest.warns(NonFiniteWarning, match="'x'"):
            result = session.run(echo_inputs)
        assert np.isnan(result["x_out"][0, 0])
        assert len(echo_engine.calls) == 1

    def test_strict_rejects_nan(self, echo_engine, echo_inputs):
        echo_inputs["x"][0, 0] = np.inf
        session = _session(echo_engine, validation="strict")
        with pytest.raises(ValidationError):
            session.run(echo_inputs)
        assert echo_engine.calls == []


class TestEngineFailures:

    def test_engine_message_preserved(self, echo_inputs):
        engine = EchoEngine(fail_with="Non-zero status code returned while running Add node")
        session = _session(engine)
        with pytest.raises(InferenceError) as exc:
            session.run(echo_inputs)
        assert exc.value.engine_message == \
            "Non-zero status code returned while running Add node"
        assert exc.value.kind == ErrorKind.INFERENCE
        assert session.stats.failures == 1

    def test_post_failure_revalidation(self, echo_inputs):
        """With validation off, an engine rejection is re-diagnosed."""
        del echo_inputs["text"]
        engine = EchoEngine(fail_with="Required inputs (['text']) are missing")
        session = _session(engine, validation="none")
        with pytest.raises(MissingRequiredInput) as exc:
            session.run(echo_inputs)
        err = exc.value
        assert len(engine.calls) == 1
        assert err.names == ("text",)
        assert err.engine_message == "Required inputs (['text']) are missing"
        assert isinstance(err.__cause__, InferenceError)

    def test_validation_none_still_resolves_structure(self, echo_engine):
        session = _session(echo_engine, validation="none")
        with pytest.raises(DuplicateNameError):
            session.run([("x", [1.0]), ("x", [2.0])])
        assert echo_engine.calls == []

    def test_validation_none_marshaller_still_guards_names(self, echo_engine, echo_inputs):
        echo_inputs["extra"] = [1.0]
        session = _session(echo_engine, validation="none")
        with pytest.raises(UnexpectedInput):
            session.run(echo_inputs)
        assert echo_engine.calls == []


class TestLifecycle:

    def test_close_releases_engine(self, echo_engine, echo_inputs):
        session = _session(echo_engine)
        session.close()
        assert echo_engine.closed
        assert session.closed
        with pytest.raises(RuntimeError, match="closed"):
            session.run(echo_inputs)

    def test_close_is_idempotent(self, echo_engine):
        session = _session(echo_engine)
        session.close()
        session.close()

    def test_context_manager(self, echo_engine, echo_inputs):
        with _session(echo_engine) as session:
            session.run(echo_inputs)
        assert echo_engine.closed
        assert "closed" in repr(session)

    def test_cancelled_before_run_never_reaches_engine(self, echo_engine, echo_inputs):
        token = CancellationToken()
        token.cancel()
        session = _session(echo_engine)
        with pytest.raises(RunCancelled):
            session.run(echo_inputs, cancel=token)
        assert echo_engine.calls == []

    def test_runs_serialized_per_session(self, echo_inputs):
        """Concurrent run() calls on one session never overlap in the engine."""
        class SlowEngine(EchoEngine):
            def __init__(self):
                super().__init__()
                self.active = 0
                self.max_active = 0
                self.guard = threading.Lock()

            def execute(self, batch, output_names=None, cancel=None):
                with self.guard:
                    self.active += 1
                    self.max_active = max(self.max_active, self.active)
                time.sleep(0.01)
                try:
                    return super().execute(batch, output_names, cancel)
                finally:
                    with self.guard:
                        self.active -= 1

        engine = SlowEngine()
        session = _session(engine)
        errors = []

        def worker():
            try:
                session.run(echo_inputs)
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(engine.calls) == 6
        assert engine.max_active == 1
        assert session.stats.runs == 6

    def test_stats_consistent_under_concurrent_failures(self, echo_inputs):
        engine = EchoEngine()
        session = _session(engine)
        good = echo_inputs
        bad = {"x": [[1.0, 2.0, 3.0]]}

        def worker(inputs):
            for _ in range(20):
                try:
                    session.run(inputs)
                except MissingRequiredInput:
                    pass

        threads = [threading.Thread(target=worker, args=(good if i % 2 else bad,))
                   for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert session.stats.runs == 60
        assert session.stats.failures == 60

    def test_close_waits_for_in_flight_run(self, echo_inputs):
        class BlockingEngine(EchoEngine):
            def __init__(self):
                super().__init__()
                self.started = threading.Event()
                self.release = threading.Event()
                self.events = []

            def execute(self, batch, output_names=None, cancel=None):
                self.started.set()
                self.release.wait(5)
                out = super().execute(batch, output_names, cancel)
                self.events.append("executed")
                return out

            def close(self):
                self.events.append("closed")
                super().close()

        engine = BlockingEngine()
        session = _session(engine)
        runner = threading.Thread(target=session.run, args=(echo_inputs,))
        runner.start()
        assert engine.started.wait(5)

        closer = threading.Thread(target=session.close)
        closer.start()
        time.sleep(0.05)
        assert not engine.closed

        engine.release.set()
        runner.join(5)
        closer.join(5)
        assert engine.events == ["executed", "closed"]
        assert session.closed


class TestTypeChecks:

    def test_invalid_utf8_text(self, echo_engine):
        session = _session(echo_engine)
        with pytest.raises(TypeMismatch) as exc:
            session.run({"x": np.zeros((1, 3), dtype=np.float32), "ids": [1],
                         "text": np.array([b"\xff\xfe"], dtype="S2")})
        assert exc.value.names == ("text",)
        assert echo_engine.calls == []

    def test_lossy_bool_input(self):
        engine = EchoEngine([TensorDescriptor("m", (DYNAMIC_DIM,), ElementType.BOOL,
                                              "tensor(bool)")])
        session = _session(engine)
        with pytest.raises(TypeMismatch):
            session.run({"m": np.array([0.5, 7.0])})
        assert engine.calls == []

    def test_zero_one_into_bool_input(self):
        engine = EchoEngine([TensorDescriptor("m", (DYNAMIC_DIM,), ElementType.BOOL,
                                              "tensor(bool)")])
        result = _session(engine).run({"m": [0, 1, 1]})
        np.testing.assert_array_equal(result["m_out"], [False, True, True])


class TestRunMany:

    def test_results_per_item(self, echo_engine, echo_inputs):
        session = _session(echo_engine)
        items = [echo_inputs, {"x": [[1.0, 2.0, 3.0]]}, echo_inputs]
        results = session.run_many(items, batch_size=2)

        assert [r.index for r in results] == [0, 1, 2]
        assert [r.ok for r in results] == [True, False, True]
        assert isinstance(results[1].error, MissingRequiredInput)
        assert results[1].outputs is None
        np.testing.assert_array_equal(results[2].outputs["x_out"], echo_inputs["x"])
        assert session.stats.runs == 2
        assert session.stats.failures == 1

    def test_empty(self, echo_engine):
        assert _session(echo_engine).run_many([]) == []

    @pytest.mark.parametrize("batch_size", [0, -3, 1.5, True])
    def test_invalid_batch_size(self, echo_engine, echo_inputs, batch_size):
        with pytest.raises(ValueError, match="batch_size"):
            _session(echo_engine).run_many([echo_inputs], batch_size=batch_size)
        assert echo_engine.calls == []

    def test_cancellation_aborts(self, echo_engine, echo_inputs):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RunCancelled):
            _session(echo_engine).run_many([echo_inputs, echo_inputs], cancel=token)

    def test_functional_alias(self, echo_engine, echo_inputs):
        results = churon.run_many(_session(echo_engine), [echo_inputs], batch_size=1)
        assert results[0].ok


class TestEstimateMemory:

    def test_dynamic_dims_count_as_one(self, echo_engine):
        pointer = np.dtype(object).itemsize
        # x: 1 x 3 float, ids: 1 int64, text: 1 string; outputs mirror inputs
        expected = 2 * (3 * 4 + 8 + pointer)
        session = _session(echo_engine)
        assert session.estimate_memory() == expected
        assert churon.estimate_memory(session) == expected

    def test_non_tensor_slots_skipped(self):
        engine = EchoEngine([
            TensorDescriptor("seq", (), None, "seq(tensor(float))"),
            TensorDescriptor("h", (2, 2), ElementType.FLOAT16, "tensor(float16)"),
        ])
        # only h and h_out count
        assert _session(engine).estimate_memory() == 2 * (4 * 2)
