"""
Unit tests for the host memory preflight
"""

import pytest

from crispify_runtime.errors import ErrorKind, OutOfMemory
from crispify_runtime.models.preflight import BYTES_PER_MB, MemoryPreflight, available_memory_bytes


class TestMemoryPreflight:
    def test_enough_memory_returns_available(self):
        preflight = MemoryPreflight(100 * BYTES_PER_MB, available_memory=lambda: 500 * BYTES_PER_MB)
        assert preflight.check() == 500 * BYTES_PER_MB

    def test_exactly_at_threshold_passes(self):
        preflight = MemoryPreflight(100 * BYTES_PER_MB, available_memory=lambda: 100 * BYTES_PER_MB)
        preflight.check()

    def test_below_threshold_raises(self):
        preflight = MemoryPreflight(100 * BYTES_PER_MB, available_memory=lambda: 99 * BYTES_PER_MB)

        with pytest.raises(OutOfMemory) as exc_info:
            preflight.check("model.gguf")

        assert exc_info.value.kind is ErrorKind.OUT_OF_MEMORY
        assert exc_info.value.required_bytes == 100 * BYTES_PER_MB
        assert exc_info.value.model_path == "model.gguf"

    def test_default_provider_reads_host_memory(self):
        assert available_memory_bytes() > 0
