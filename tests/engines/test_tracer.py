"""Tests for the engine tracing decorator (fee_engines/tracer.py)."""

from decimal import Decimal

from fee_engines.tracer import compute_input_fingerprint, traced_engine
from fee_kernel.domain.fee_types import ReferenceAmount


class TestComputeInputFingerprint:
    def test_deterministic(self):
        kwargs = {"transaction": {"b": 1, "a": [Decimal("1.5"), None]}}
        assert compute_input_fingerprint(("transaction",), kwargs) == compute_input_fingerprint(
            ("transaction",), {"transaction": {"a": [Decimal("1.5"), None], "b": 1}}
        )

    def test_length(self):
        assert len(compute_input_fingerprint(("x",), {"x": 1})) == 16

    def test_sensitive_to_values(self):
        assert compute_input_fingerprint(("x",), {"x": True}) != compute_input_fingerprint(
            ("x",), {"x": False}
        )

    def test_enum_canonicalized_by_value(self):
        assert compute_input_fingerprint(
            ("ref",), {"ref": ReferenceAmount.ORIGINAL_AMOUNT}
        ) == compute_input_fingerprint(("ref",), {"ref": "originalAmount"})


class TestTracedEngine:
    """The decorator logs a trace and never changes the result."""

    def test_result_unchanged_and_trace_emitted(self, captured_logs):
        @traced_engine("sample", "2.1", fingerprint_fields=("amount",))
        def double(*, amount: Decimal) -> Decimal:
            return amount * 2

        assert double(amount=Decimal("2.5")) == Decimal("5.0")

        traces = [r for r in captured_logs() if r["message"] == "FEE_ENGINE_TRACE"]
        assert len(traces) == 1
        trace = traces[0]
        assert trace["trace_type"] == "FEE_ENGINE_TRACE"
        assert trace["engine_name"] == "sample"
        assert trace["engine_version"] == "2.1"
        assert len(trace["input_fingerprint"]) == 16
        assert trace["duration_ms"] >= 0

    def test_wraps_metadata(self):
        @traced_engine("sample", "1.0")
        def documented():
            """Docstring."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring."

    def test_positional_and_keyword_calls_fingerprint_alike(self, captured_logs):
        @traced_engine("sample", "1.0", fingerprint_fields=("amount", "asset"))
        def describe(amount: Decimal, asset: str = "USD") -> str:
            return f"{asset} {amount}"

        describe(Decimal("1"))
        describe(amount=Decimal("1"), asset="USD")
        describe(Decimal("2"))

        fingerprints = [
            r["input_fingerprint"] for r in captured_logs() if r["message"] == "FEE_ENGINE_TRACE"
        ]
        assert fingerprints[0] == fingerprints[1]
        assert fingerprints[0] != fingerprints[2]
