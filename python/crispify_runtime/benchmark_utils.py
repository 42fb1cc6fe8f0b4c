"""
Benchmark-aware logging for the generation hot path

With CRISPIFY_BENCHMARK_MODE=1 the session and generation loop drop
info/debug records entirely (no formatting, no handler dispatch), so
latency measurements are not skewed by logging. Warnings and errors are
always emitted.
"""

import logging
import os
from typing import Any


# Cached on import
_BENCHMARK_MODE = os.getenv("CRISPIFY_BENCHMARK_MODE", "").strip() == "1"


def is_benchmark_mode() -> bool:
    """True if CRISPIFY_BENCHMARK_MODE=1 is set"""
    return _BENCHMARK_MODE


class BenchmarkAwareLogger:
    """
    Thin wrapper over a stdlib logger taking keyword context

    Usage:
        logger = BenchmarkAwareLogger("generator")
        logger.debug("Stop marker matched", marker="<end_of_turn>", position=41)
        # -> crispify.generator: Stop marker matched (marker=<end_of_turn> position=41)
    """

    def __init__(self, name: str, benchmark_mode: bool = _BENCHMARK_MODE):
        self.name = name
        self.benchmark_mode = benchmark_mode
        self._logger = logging.getLogger(f"crispify.{name}")

    @staticmethod
    def _format_message(msg: str, **kwargs: Any) -> str:
        if kwargs:
            ctx = " ".join(f"{k}={v}" for k, v in kwargs.items())
            return f"{msg} ({ctx})"
        return msg

    def _log(self, level: int, msg: str, **kwargs: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self._format_message(msg, **kwargs))

    def debug(self, msg: str, **kwargs: Any) -> None:
        if not self.benchmark_mode:
            self._log(logging.DEBUG, msg, **kwargs)

    def info(self, msg: str, **kwargs: Any) -> None:
        if not self.benchmark_mode:
            self._log(logging.INFO, msg, **kwargs)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, **kwargs)

    def error(self, msg: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, **kwargs)
