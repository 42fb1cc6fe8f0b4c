"""
Local diagnostics collection

Privacy-preserving recorder for processing metrics:
- Only collects non-identifiable numbers (never any user text)
- Works entirely offline
- Opt-in; disabling clears everything already collected
- Bounded storage (oldest metrics are dropped first)
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from itertools import groupby
from typing import Deque, Dict, List, Optional, Union

from .errors import ErrorKind

Number = Union[int, float]


class MetricType(Enum):
    TIME_TO_FIRST_TOKEN = ("Time to First Token", True)
    TOKENS_PER_SECOND = ("Processing Speed", True)
    MEMORY_PEAK_MB = ("Memory Usage", True)
    ERROR_CODE = ("Errors", False)
    INPUT_LENGTH = ("Input Size", True)
    OUTPUT_LENGTH = ("Output Size", True)

    def __init__(self, display_name: str, is_numeric: bool):
        self.display_name = display_name
        self.is_numeric = is_numeric

    def format(self, value: float) -> str:
        if self is MetricType.TIME_TO_FIRST_TOKEN:
            return f"{value / 1000.0}s"
        if self is MetricType.TOKENS_PER_SECOND:
            return f"{value:.1f} tok/s"
        if self is MetricType.MEMORY_PEAK_MB:
            return f"{int(value)}MB"
        if self in (MetricType.INPUT_LENGTH, MetricType.OUTPUT_LENGTH):
            return f"{int(value)} chars"
        return str(int(value))


class DiagnosticErrorCode(Enum):
    UNKNOWN = (0, "Unknown error")
    MODEL_INITIALIZATION_FAILED = (1001, "Model initialization failed")
    OUT_OF_MEMORY = (1002, "Out of memory")
    TEXT_TOO_LONG = (1003, "Input text too long")
    PROCESSING_FAILED = (1004, "Text processing failed")
    CONTEXT_OVERFLOW = (1005, "Prompt does not fit the context window")

    def __init__(self, code: int, description: str):
        self.code = code
        self.description = description

    @classmethod
    def from_code(cls, code: int) -> "DiagnosticErrorCode":
        for member in cls:
            if member.code == code:
                return member
        return cls.UNKNOWN

    @classmethod
    def from_error_kind(cls, kind: ErrorKind) -> Optional["DiagnosticErrorCode"]:
        return {
            ErrorKind.OUT_OF_MEMORY: cls.OUT_OF_MEMORY,
            ErrorKind.TOKEN_LIMIT_EXCEEDED: cls.TEXT_TOO_LONG,
            ErrorKind.CONTEXT_OVERFLOW: cls.CONTEXT_OVERFLOW,
            ErrorKind.INFERENCE_FAILED: cls.PROCESSING_FAILED,
            ErrorKind.MODEL_NOT_LOADED: cls.PROCESSING_FAILED,
        }.get(kind)


@dataclass(frozen=True)
class DiagnosticMetric:
    type: MetricType
    value: Number
    timestamp: float


class DiagnosticsRecorder:
    """Thread-safe, bounded, opt-in metric store"""

    def __init__(self, enabled: bool = False, max_metrics: int = 100):
        self._enabled = enabled
        self._lock = threading.Lock()
        self._metrics: Deque[DiagnosticMetric] = deque(maxlen=max_metrics)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if not enabled:
            self.clear()

    def record_metric(self, metric_type: MetricType, value: Number) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._metrics.append(DiagnosticMetric(metric_type, value, time.time()))

    def record_error(self, code: DiagnosticErrorCode) -> None:
        self.record_metric(MetricType.ERROR_CODE, code.code)

    def record_processing_session(
        self,
        input_length: int,
        output_length: int,
        time_to_first_token_ms: float,
        tokens_per_second: float,
        memory_used_mb: int,
    ) -> None:
        """Record one completed request. Takes lengths only, never text."""
        if not self._enabled:
            return
        self.record_metric(MetricType.INPUT_LENGTH, input_length)
        self.record_metric(MetricType.OUTPUT_LENGTH, output_length)
        self.record_metric(MetricType.TIME_TO_FIRST_TOKEN, time_to_first_token_ms)
        self.record_metric(MetricType.TOKENS_PER_SECOND, tokens_per_second)
        self.record_metric(MetricType.MEMORY_PEAK_MB, memory_used_mb)

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()

    def metrics(self) -> List[DiagnosticMetric]:
        with self._lock:
            return list(self._metrics)

    def to_dict(self) -> Dict[str, object]:
        return {
            "enabled": self._enabled,
            "metrics": [
                {"type": m.type.name, "value": m.value, "timestamp": m.timestamp}
                for m in self.metrics()
            ],
        }

    def export_text(self) -> str:
        """Human-readable report grouped by metric type"""
        metrics = self.metrics()
        if not metrics:
            return "No diagnostics data available."

        fmt = "%Y-%m-%d %H:%M:%S"
        lines = [
            "=== Crispify Diagnostics Export ===",
            f"Generated: {datetime.now().strftime(fmt)}",
            f"Total metrics: {len(metrics)}",
            "",
        ]

        ordered = sorted(metrics, key=lambda m: list(MetricType).index(m.type))
        for metric_type, group in groupby(ordered, key=lambda m: m.type):
            items = list(group)
            lines.append(f"--- {metric_type.display_name} ---")
            for metric in items:
                stamp = datetime.fromtimestamp(metric.timestamp).strftime(fmt)
                lines.append(f"  {stamp}: {interpret_metric(metric)}")
            if metric_type.is_numeric:
                values = [float(m.value) for m in items]
                lines.append(
                    f"  Summary: Avg={metric_type.format(sum(values) / len(values))}, "
                    f"Min={metric_type.format(min(values))}, Max={metric_type.format(max(values))}"
                )
            lines.append("")

        lines.append("=== End of Export ===")
        return "\n".join(lines)


def interpret_metric(metric: DiagnosticMetric) -> str:
    value = metric.value
    if metric.type is MetricType.TIME_TO_FIRST_TOKEN:
        seconds = value / 1000.0
        rating = "Fast" if seconds < 2.0 else "Okay" if seconds < 4.0 else "Slow"
        return f"Time to First Token: {seconds}s ({rating})"
    if metric.type is MetricType.TOKENS_PER_SECOND:
        rating = "Good" if value > 50 else "Acceptable" if value > 20 else "Slow"
        return f"Tokens/Second: {value} ({rating})"
    if metric.type is MetricType.MEMORY_PEAK_MB:
        rating = "Low" if value < 100 else "Normal" if value < 200 else "High"
        return f"Memory Peak: {int(value)}MB ({rating})"
    if metric.type is MetricType.ERROR_CODE:
        return f"Error: {DiagnosticErrorCode.from_code(int(value)).description}"
    if metric.type is MetricType.INPUT_LENGTH:
        return f"Input Length: {value} characters"
    return f"Output Length: {value} characters"
