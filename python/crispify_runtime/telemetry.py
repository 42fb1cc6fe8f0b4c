"""
Telemetry for the Crispify runtime

StatsCollector measures a single generation (elapsed time, time to first
token, tokens/second). RuntimeTelemetry aggregates those measurements
across requests with a rolling window and percentile latencies.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass
class GenerationStats:
    """Statistics of one process_text call"""

    tokens_generated: int = 0
    prompt_tokens: int = 0
    total_time_s: float = 0.0
    time_to_first_token_s: Optional[float] = None
    tokens_per_second: float = 0.0
    stop_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokens_generated": self.tokens_generated,
            "prompt_tokens": self.prompt_tokens,
            "total_time": self.total_time_s,
            "time_to_first_token": self.time_to_first_token_s,
            "tokens_per_second": self.tokens_per_second,
            "stop_reason": self.stop_reason,
        }


class StatsCollector:
    """Per-request timer; start() when the pipeline begins, finish() after the loop exits"""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._started_at: Optional[float] = None
        self._first_token_at: Optional[float] = None
        self.tokens = 0

    def start(self) -> None:
        self._started_at = self._clock()
        self._first_token_at = None
        self.tokens = 0

    def record_token(self) -> None:
        if self._first_token_at is None:
            self._first_token_at = self._clock()
        self.tokens += 1

    def finish(self, prompt_tokens: int = 0, stop_reason: Optional[str] = None) -> GenerationStats:
        now = self._clock()
        started = self._started_at if self._started_at is not None else now
        elapsed = max(now - started, 0.0)
        ttft = (self._first_token_at - started) if self._first_token_at is not None else None
        throughput = self.tokens / elapsed if self.tokens > 0 and elapsed > 0 else 0.0
        return GenerationStats(
            tokens_generated=self.tokens,
            prompt_tokens=prompt_tokens,
            total_time_s=elapsed,
            time_to_first_token_s=ttft,
            tokens_per_second=throughput,
            stop_reason=stop_reason,
        )


@dataclass
class TelemetryStats:
    """Statistics for telemetry tracking"""
    generate_calls: int = 0
    load_calls: int = 0
    total_tokens: int = 0
    total_generate_time_ms: float = 0.0
    generate_latencies_ms: List[float] = field(default_factory=list)
    ttft_ms: List[float] = field(default_factory=list)
    load_latencies_ms: List[float] = field(default_factory=list)
    errors: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)
    cancellations: int = 0
    generation_errors: int = 0


class RuntimeTelemetry:
    """
    Lightweight telemetry system for the runtime

    Features:
    - Percentile latency tracking (p50, p95, p99)
    - Rolling window (1000 samples max)
    - Configurable sampling rate
    """

    def __init__(self, enabled: bool = True, sampling_rate: float = 1.0):
        """
        Args:
            enabled: Enable/disable telemetry
            sampling_rate: Probability of recording an event (0.01-1.0)
        """
        self.enabled = enabled
        self.sampling_rate = max(0.01, min(1.0, sampling_rate))
        self.stats = TelemetryStats()
        self._max_samples = 1000  # Rolling window size

    def _sampled_out(self) -> bool:
        return self.sampling_rate < 1.0 and random.random() > self.sampling_rate

    def _trim(self, values: List[float]) -> List[float]:
        if len(values) > self._max_samples:
            return values[-self._max_samples:]
        return values

    def record_generation(self, stats: GenerationStats, error_kind: Optional[str] = None) -> None:
        """Record a finished process_text call"""
        if not self.enabled or self._sampled_out():
            return

        duration_ms = stats.total_time_s * 1000.0
        self.stats.generate_calls += 1
        self.stats.total_tokens += stats.tokens_generated
        self.stats.total_generate_time_ms += duration_ms
        self.stats.generate_latencies_ms.append(duration_ms)
        if stats.time_to_first_token_s is not None:
            self.stats.ttft_ms.append(stats.time_to_first_token_s * 1000.0)

        if error_kind == "cancelled":
            self.stats.cancellations += 1
        elif error_kind and error_kind != "none":
            self.stats.generation_errors += 1
            self.record_error(error_kind)

        self.stats.generate_latencies_ms = self._trim(self.stats.generate_latencies_ms)
        self.stats.ttft_ms = self._trim(self.stats.ttft_ms)

    def record_load(self, duration_ms: float, success: bool = True) -> None:
        """Record a model load attempt"""
        if not self.enabled:
            return

        self.stats.load_calls += 1
        self.stats.load_latencies_ms.append(duration_ms)
        self.stats.load_latencies_ms = self._trim(self.stats.load_latencies_ms)
        if not success:
            self.record_error("model_load_failed")

    def record_error(self, kind: str) -> None:
        """Record an error event"""
        if not self.enabled:
            return

        self.stats.errors += 1
        self.stats.errors_by_kind[kind] = self.stats.errors_by_kind.get(kind, 0) + 1

    def get_report(self) -> Dict[str, Any]:
        """
        Get comprehensive telemetry report

        Returns:
            Dictionary with performance metrics including percentiles
        """
        if not self.enabled:
            return {"enabled": False}

        return {
            "enabled": True,
            "sampling_rate": self.sampling_rate,
            "generation": self._get_generation_metrics(),
            "load": {
                "calls": self.stats.load_calls,
                "latency_ms": self._latency_summary(self.stats.load_latencies_ms),
            },
            "errors": {
                "total": self.stats.errors,
                "by_kind": dict(self.stats.errors_by_kind),
                "cancellations": self.stats.cancellations,
                # Load failures and rejected requests never reach generate_calls
                "error_rate": self.stats.generation_errors / max(1, self.stats.generate_calls),
            },
        }

    def _get_generation_metrics(self) -> Dict[str, Any]:
        """Calculate generation performance metrics"""
        if self.stats.generate_calls == 0:
            return {"calls": 0, "total_tokens": 0}

        return {
            "calls": self.stats.generate_calls,
            "total_tokens": self.stats.total_tokens,
            "avg_tokens_per_call": self.stats.total_tokens / self.stats.generate_calls,
            "latency_ms": self._latency_summary(self.stats.generate_latencies_ms),
            "ttft_ms": self._latency_summary(self.stats.ttft_ms),
            "throughput": {
                "tokens_per_second": (
                    (self.stats.total_tokens / (self.stats.total_generate_time_ms / 1000.0))
                    if self.stats.total_generate_time_ms > 0 else 0
                )
            },
        }

    def _latency_summary(self, values: List[float]) -> Dict[str, float]:
        if not values:
            return {}
        latencies = sorted(values)
        summary = {
            "mean": sum(latencies) / len(latencies),
            "min": latencies[0],
            "max": latencies[-1],
        }
        # Percentiles only mean something with a handful of samples
        if len(latencies) >= 10:
            summary["p50"] = self._percentile(latencies, 0.50)
            summary["p95"] = self._percentile(latencies, 0.95)
            summary["p99"] = self._percentile(latencies, 0.99)
        return summary

    @staticmethod
    def _percentile(sorted_values: List[float], percentile: float) -> float:
        """Nearest-rank percentile of already sorted values (0.0-1.0)"""
        if not sorted_values:
            return 0.0

        n = len(sorted_values)
        index = min(int(percentile * n), n - 1)
        return sorted_values[index]

    def reset(self) -> None:
        """Reset all statistics"""
        self.stats = TelemetryStats()

    def get_stats_summary(self) -> str:
        """Get a human-readable summary of statistics"""
        report = self.get_report()

        if not report.get("enabled"):
            return "Telemetry disabled"

        lines = ["=== Telemetry Report ==="]

        gen = report.get("generation", {})
        if gen.get("calls", 0) > 0:
            lines.append("\nGeneration:")
            lines.append(f"  Calls: {gen['calls']}")
            lines.append(f"  Total tokens: {gen['total_tokens']}")
            lines.append(f"  Avg tokens/call: {gen['avg_tokens_per_call']:.1f}")
            lines.append(f"  Throughput: {gen['throughput']['tokens_per_second']:.1f} tokens/s")

            lat = gen["latency_ms"]
            lines.append(f"  Latency: mean={lat['mean']:.2f}ms, min={lat['min']:.2f}ms, max={lat['max']:.2f}ms")
            if "p95" in lat:
                lines.append(f"  Percentiles: p50={lat['p50']:.2f}ms, p95={lat['p95']:.2f}ms, p99={lat['p99']:.2f}ms")

        errors = report.get("errors", {})
        if errors.get("total", 0) > 0 or errors.get("cancellations", 0) > 0:
            lines.append("\nErrors:")
            lines.append(f"  Total: {errors['total']}")
            for kind, count in sorted(errors["by_kind"].items()):
                lines.append(f"  {kind}: {count}")
            lines.append(f"  Cancellations: {errors['cancellations']}")
            lines.append(f"  Error rate: {errors['error_rate']*100:.2f}%")

        return "\n".join(lines)
