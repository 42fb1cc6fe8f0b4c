"""
Unit tests for per-request stats and aggregated runtime telemetry
"""

import pytest

from crispify_runtime.telemetry import GenerationStats, RuntimeTelemetry, StatsCollector


class FakeClock:
    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestStatsCollector:
    def test_time_to_first_token_and_throughput(self):
        clock = FakeClock()
        stats = StatsCollector(clock=clock)
        stats.start()

        clock.advance(0.5)
        stats.record_token()
        for _ in range(9):
            clock.advance(0.15)
            stats.record_token()

        result = stats.finish(prompt_tokens=42, stop_reason="eos")

        assert result.tokens_generated == 10
        assert result.prompt_tokens == 42
        assert result.time_to_first_token_s == pytest.approx(0.5)
        assert result.total_time_s == pytest.approx(1.85)
        assert result.tokens_per_second == pytest.approx(10 / 1.85)
        assert result.stop_reason == "eos"

    def test_no_tokens(self):
        clock = FakeClock()
        stats = StatsCollector(clock=clock)
        stats.start()
        clock.advance(0.2)

        result = stats.finish()

        assert result.tokens_generated == 0
        assert result.time_to_first_token_s is None
        assert result.tokens_per_second == 0.0

    def test_start_resets_counters(self):
        stats = StatsCollector(clock=FakeClock())
        stats.start()
        stats.record_token()
        stats.start()
        assert stats.tokens == 0

    def test_to_dict(self):
        data = GenerationStats(tokens_generated=3, stop_reason="max_tokens").to_dict()
        assert data["tokens_generated"] == 3
        assert data["stop_reason"] == "max_tokens"
        assert data["time_to_first_token"] is None


class TestRuntimeTelemetry:
    def test_disabled_reports_nothing(self):
        telemetry = RuntimeTelemetry(enabled=False)
        telemetry.record_generation(GenerationStats(tokens_generated=5, total_time_s=1.0))
        assert telemetry.get_report() == {"enabled": False}
        assert telemetry.get_stats_summary() == "Telemetry disabled"

    def test_sampling_rate_clamped(self):
        assert RuntimeTelemetry(sampling_rate=0.0).sampling_rate == 0.01
        assert RuntimeTelemetry(sampling_rate=5.0).sampling_rate == 1.0

    def test_generation_metrics(self):
        telemetry = RuntimeTelemetry()
        for i in range(20):
            telemetry.record_generation(GenerationStats(
                tokens_generated=10,
                total_time_s=(i + 1) / 10.0,
                time_to_first_token_s=0.05,
            ))

        gen = telemetry.get_report()["generation"]
        assert gen["calls"] == 20
        assert gen["total_tokens"] == 200
        assert gen["avg_tokens_per_call"] == 10
        assert gen["latency_ms"]["min"] == pytest.approx(100.0)
        assert gen["latency_ms"]["max"] == pytest.approx(2000.0)
        assert gen["latency_ms"]["p50"] == pytest.approx(1100.0)
        assert gen["ttft_ms"]["mean"] == pytest.approx(50.0)

    def test_percentiles_need_enough_samples(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_generation(GenerationStats(tokens_generated=1, total_time_s=0.1))
        assert "p95" not in telemetry.get_report()["generation"]["latency_ms"]

    def test_errors_and_cancellations_counted_separately(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_generation(GenerationStats(), "cancelled")
        telemetry.record_generation(GenerationStats(), "token_limit_exceeded")
        telemetry.record_generation(GenerationStats(), "none")

        errors = telemetry.get_report()["errors"]
        assert errors["total"] == 1
        assert errors["by_kind"] == {"token_limit_exceeded": 1}
        assert errors["cancellations"] == 1

    def test_error_rate_counts_only_generation_errors(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_generation(GenerationStats(), "inference_failed")
        telemetry.record_generation(GenerationStats(), "none")
        telemetry.record_load(50.0, success=False)
        telemetry.record_error("busy")

        errors = telemetry.get_report()["errors"]
        assert errors["total"] == 3
        assert errors["error_rate"] == pytest.approx(0.5)

    def test_rolling_window(self):
        telemetry = RuntimeTelemetry()
        for _ in range(1200):
            telemetry.record_generation(GenerationStats(total_time_s=0.01))
        assert len(telemetry.stats.generate_latencies_ms) == 1000
        assert telemetry.stats.generate_calls == 1200

    def test_load_latency(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_load(120.0)
        telemetry.record_load(80.0, success=False)

        report = telemetry.get_report()
        assert report["load"]["calls"] == 2
        assert report["load"]["latency_ms"]["mean"] == pytest.approx(100.0)
        assert report["errors"]["by_kind"] == {"model_load_failed": 1}

    def test_summary_and_reset(self):
        telemetry = RuntimeTelemetry()
        telemetry.record_generation(GenerationStats(tokens_generated=4, total_time_s=0.5), "inference_failed")

        summary = telemetry.get_stats_summary()
        assert "Calls: 1" in summary
        assert "inference_failed: 1" in summary

        telemetry.reset()
        assert telemetry.get_report()["generation"] == {"calls": 0, "total_tokens": 0}
