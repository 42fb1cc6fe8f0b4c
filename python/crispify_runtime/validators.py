"""
Input validation for runtime requests and model files

Centralized validation logic to reject invalid parameters before any
engine work is attempted.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

GGUF_MAGIC = b"GGUF"


def validate_text_input(text: Any, param_name: str = "text", max_length: int = 1_048_576) -> str:
    """
    Validate text input parameters

    Args:
        text: Text to validate
        param_name: Parameter name for error messages
        max_length: Maximum allowed length in characters (default 1MB)

    Returns:
        Validated text string

    Raises:
        ValueError: If text is invalid
    """
    if not isinstance(text, str):
        raise ValueError(f"{param_name} must be a string, got {type(text).__name__}")

    if len(text) > max_length:
        raise ValueError(f"{param_name} too long ({len(text)} chars, max {max_length})")

    return text


def validate_model_path(model_path: Any) -> str:
    """
    Validate a model path parameter (shape only, not existence)

    Raises:
        ValueError: If model_path is invalid
    """
    if not model_path:
        raise ValueError("model_path is required")

    if not isinstance(model_path, str):
        raise ValueError(f"model_path must be a string, got {type(model_path).__name__}")

    if len(model_path) > 4096:
        raise ValueError(f"model_path too long ({len(model_path)} chars, max 4096)")

    if "\x00" in model_path:
        raise ValueError("model_path contains a NUL byte")

    return model_path


def verify_gguf_file(model_path: str, min_size_bytes: int = 0, check_magic: bool = True) -> Path:
    """
    Check that a model file is complete and looks like GGUF

    Args:
        model_path: Path to the model file
        min_size_bytes: Reject files smaller than this (truncated copies)
        check_magic: Require the 4-byte "GGUF" header

    Returns:
        Resolved path

    Raises:
        ValueError: If the file is missing, too small or not GGUF
    """
    path = Path(model_path).expanduser()

    if not path.exists():
        raise ValueError("Model file does not exist")
    if not path.is_file():
        raise ValueError("Model path is not a regular file")

    size = path.stat().st_size
    if size < min_size_bytes:
        raise ValueError(f"Model file too small ({size} bytes, min {min_size_bytes})")

    if check_magic:
        with open(path, "rb") as f:
            magic = f.read(len(GGUF_MAGIC))
        if magic != GGUF_MAGIC:
            raise ValueError(f"Invalid model format: expected GGUF header, got {magic!r}")

    return path.resolve()


def validate_sampling_params(params: Dict[str, Any]) -> None:
    """
    Validate a sampling profile

    Args:
        params: Sampling parameters to validate

    Raises:
        ValueError: If parameters are invalid
    """
    temp = params.get("temperature", 0.0)
    if not isinstance(temp, (int, float)):
        raise ValueError(f"temperature must be numeric, got {type(temp).__name__}")
    if temp < 0 or temp > 2.0:
        raise ValueError(f"temperature must be in [0, 2], got {temp}")

    top_p = params.get("top_p", 1.0)
    if not isinstance(top_p, (int, float)):
        raise ValueError(f"top_p must be numeric, got {type(top_p).__name__}")
    if not (0 < top_p <= 1):
        raise ValueError(f"top_p must be in (0, 1], got {top_p}")

    top_k = params.get("top_k", 0)
    if not isinstance(top_k, int) or isinstance(top_k, bool):
        raise ValueError(f"top_k must be an integer, got {type(top_k).__name__}")
    if top_k < 0:
        raise ValueError(f"top_k must be >= 0, got {top_k}")

    min_p = params.get("min_p", 0.0)
    if not isinstance(min_p, (int, float)):
        raise ValueError(f"min_p must be numeric, got {type(min_p).__name__}")
    if not (0 <= min_p < 1):
        raise ValueError(f"min_p must be in [0, 1), got {min_p}")

    repeat_penalty = params.get("repeat_penalty", 1.0)
    if not isinstance(repeat_penalty, (int, float)):
        raise ValueError(f"repeat_penalty must be numeric, got {type(repeat_penalty).__name__}")
    if repeat_penalty <= 0:
        raise ValueError(f"repeat_penalty must be positive, got {repeat_penalty}")

    for penalty_name in ["presence_penalty", "frequency_penalty"]:
        penalty = params.get(penalty_name, 0.0)
        if not isinstance(penalty, (int, float)):
            raise ValueError(f"{penalty_name} must be numeric, got {type(penalty).__name__}")
        if penalty < -2.0 or penalty > 2.0:
            raise ValueError(f"{penalty_name} must be in [-2.0, 2.0], got {penalty}")

    last_n = params.get("penalty_last_n", 64)
    if not isinstance(last_n, int) or isinstance(last_n, bool):
        raise ValueError(f"penalty_last_n must be an integer, got {type(last_n).__name__}")
    if last_n < 0:
        raise ValueError(f"penalty_last_n must be >= 0, got {last_n}")
