"""
Tests for carton metrics and logging.
"""

import logging

import numpy as np
import pytest

from modelcarton.core.exceptions import ReferenceNotFound
from modelcarton.core.metrics import MetricsCollector, get_logger, get_metrics


class TestCartonMetrics:
    """Tests for the metrics emitted by pack, load and inference."""

    @pytest.mark.asyncio
    async def test_pack_load_and_infer(self, carton, model_dir, model_info, noop_runner, tmp_path):
        """Test the counters and load histogram after one pack, two loads and an inference."""
        path = await carton.pack(model_dir, noop_runner, model_info, tmp_path / "m.carton")

        async with await carton.load(path) as model:
            await model.infer({"x": np.ones((1, 3), dtype=np.float32)})
        async with await carton.load_unpacked(model_dir, noop_runner, model_info):
            pass

        metrics = get_metrics()
        assert metrics.get_counter("carton_packs_total") == 1
        assert metrics.get_counter("carton_inferences_total", labels={"runner": "noop"}) == 1
        assert metrics.get_counter("carton_inferences_total") == 0
        assert metrics.histogram("carton_load_duration_seconds").count == 2
        assert metrics.histogram("carton_download_duration_seconds").count == 0

    @pytest.mark.asyncio
    async def test_failed_load_is_timed(self, carton, tmp_path):
        """Test that a load that raises is still observed."""
        with pytest.raises(ReferenceNotFound):
            await carton.load(str(tmp_path / "missing.carton"))

        assert get_metrics().histogram("carton_load_duration_seconds").count == 1

    def test_reset(self):
        """Test that reset drops every counter."""
        get_metrics().increment_counter("carton_packs_total")
        MetricsCollector.reset()

        assert get_metrics().get_counter("carton_packs_total") == 0

    def test_histogram_buckets(self):
        """Test cumulative bucket counts."""
        histogram = get_metrics().histogram("carton_load_duration_seconds")
        histogram.observe(0.02)
        histogram.observe(2.0)

        counts = histogram.cumulative_counts()
        assert counts["0.01"] == 0
        assert counts["0.05"] == 1
        assert counts["5.0"] == 2
        assert counts["+Inf"] == 2
        assert histogram.total == pytest.approx(2.02)

    def test_unknown_histogram(self):
        """Test that only the declared duration histograms exist."""
        with pytest.raises(KeyError):
            with get_metrics().measure_time("carton_unknown_seconds"):
                pass


class TestLogging:
    """Tests for structured logging and spans."""

    def test_bound_context(self, caplog):
        """Test that bound context is appended and dropped after the scope."""
        log = get_logger("modelcarton.test")

        with caplog.at_level(logging.INFO, logger="modelcarton.test"):
            with log.context(source="model_dir"):
                log.info("Packed carton", bytes=12)
            log.info("Done")

        assert caplog.messages == ["Packed carton | source=model_dir bytes=12", "Done"]

    def test_span_records_error(self, caplog):
        """Test that a failing span is logged with its error."""
        tracer = get_metrics().tracer

        with caplog.at_level(logging.DEBUG, logger="modelcarton.core.metrics"):
            with pytest.raises(ValueError):
                with tracer.start_span("carton.load", attributes={"reference": "x"}) as span:
                    raise ValueError("boom")

        assert span.status == "error"
        assert span.duration_ms is not None
        assert "carton.load error" in caplog.text
        assert "ValueError: boom" in caplog.text
