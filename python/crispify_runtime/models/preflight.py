"""
Resource preflight - Host memory check before any engine work

Local inference engines can abort the whole process under memory
pressure, so a request is rejected up front when available memory is
below a fixed threshold. No tokenization or decode happens on rejection.
"""

import logging
from typing import Callable, Optional

import psutil

from ..errors import OutOfMemory

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def available_memory_bytes() -> int:
    """Memory the host can hand out without swapping"""
    return int(psutil.virtual_memory().available)


class MemoryPreflight:
    """Compares available host memory against a threshold"""

    def __init__(
        self,
        threshold_bytes: int = 100 * BYTES_PER_MB,
        available_memory: Optional[Callable[[], int]] = None,
    ):
        self.threshold_bytes = threshold_bytes
        self._available_memory = available_memory or available_memory_bytes

    def check(self, model_path: Optional[str] = None) -> int:
        """
        Verify enough memory is available

        Returns:
            Available memory in bytes

        Raises:
            OutOfMemory: If available memory is below the threshold
        """
        available = self._available_memory()
        if available < self.threshold_bytes:
            logger.warning(
                "Insufficient memory for generation: %dMB available, %dMB required",
                available // BYTES_PER_MB,
                self.threshold_bytes // BYTES_PER_MB,
            )
            raise OutOfMemory(model_path, available, self.threshold_bytes)
        return available
