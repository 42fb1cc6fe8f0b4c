"""
Unit tests for error classification and input validators
"""

import pytest

from crispify_runtime.errors import (
    ERROR_CODE_MAP,
    ContextOverflow,
    CrispifyRuntimeError,
    ErrorKind,
    GenerationInProgress,
    InferenceFailed,
    ModelLoadError,
    ModelNotLoaded,
    OutOfMemory,
    TokenLimitExceeded,
    error_kind_of,
)
from crispify_runtime.validators import (
    validate_model_path,
    validate_sampling_params,
    validate_text_input,
    verify_gguf_file,
)


class TestErrorKinds:
    @pytest.mark.parametrize("exc, kind", [
        (TokenLimitExceeded("m.gguf", 1001, 1000), ErrorKind.TOKEN_LIMIT_EXCEEDED),
        (ContextOverflow("m.gguf", 1300, 1200), ErrorKind.CONTEXT_OVERFLOW),
        (OutOfMemory("m.gguf", 10, 100), ErrorKind.OUT_OF_MEMORY),
        (ModelNotLoaded(), ErrorKind.MODEL_NOT_LOADED),
        (InferenceFailed("m.gguf", "decode failed"), ErrorKind.INFERENCE_FAILED),
        (GenerationInProgress(), ErrorKind.BUSY),
        (MemoryError(), ErrorKind.OUT_OF_MEMORY),
        (RuntimeError("boom"), ErrorKind.INFERENCE_FAILED),
    ])
    def test_error_kind_of(self, exc, kind):
        assert error_kind_of(exc) is kind

    def test_messages_carry_limits(self):
        exc = TokenLimitExceeded("m.gguf", 1001, 1000)
        assert "1001" in exc.message and "1000" in exc.message
        assert exc.model_path == "m.gguf"

    def test_out_of_memory_message_in_megabytes(self):
        exc = OutOfMemory(None, 50 * 1024 * 1024, 100 * 1024 * 1024)
        assert "50MB available" in exc.message
        assert "100MB required" in exc.message

    def test_model_load_error_keeps_reason(self):
        exc = ModelLoadError("m.gguf", "bad header")
        assert exc.reason == "bad header"
        assert "m.gguf" in str(exc)

    def test_every_error_has_distinct_code(self):
        codes = list(ERROR_CODE_MAP.values())
        assert len(codes) == len(set(codes))
        assert ERROR_CODE_MAP[CrispifyRuntimeError] == -32099


class TestTextAndPathValidation:
    def test_text_must_be_string(self):
        with pytest.raises(ValueError, match="must be a string"):
            validate_text_input(42)

    def test_text_length_limit(self):
        with pytest.raises(ValueError, match="too long"):
            validate_text_input("x" * 11, max_length=10)

    def test_empty_text_allowed(self):
        assert validate_text_input("") == ""

    @pytest.mark.parametrize("value, message", [
        (None, "required"),
        ("", "required"),
        (123, "must be a string"),
        ("a" * 5000, "too long"),
        ("model\x00.gguf", "NUL"),
    ])
    def test_invalid_model_paths(self, value, message):
        with pytest.raises(ValueError, match=message):
            validate_model_path(value)


class TestVerifyGguf:
    def test_valid_file(self, tmp_path):
        path = tmp_path / "model.gguf"
        path.write_bytes(b"GGUF" + b"\x00" * 60)

        assert verify_gguf_file(str(path), min_size_bytes=64) == path.resolve()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            verify_gguf_file(str(tmp_path / "absent.gguf"))

    def test_directory_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="not a regular file"):
            verify_gguf_file(str(tmp_path))

    def test_truncated_file_rejected(self, tmp_path):
        path = tmp_path / "model.gguf"
        path.write_bytes(b"GGUF")
        with pytest.raises(ValueError, match="too small"):
            verify_gguf_file(str(path), min_size_bytes=100)

    def test_wrong_magic_rejected(self, tmp_path):
        path = tmp_path / "model.bin"
        path.write_bytes(b"PK\x03\x04" + b"\x00" * 10)
        with pytest.raises(ValueError, match="expected GGUF header"):
            verify_gguf_file(str(path))

    def test_magic_check_can_be_disabled(self, tmp_path):
        path = tmp_path / "model.bin"
        path.write_bytes(b"PK\x03\x04")
        verify_gguf_file(str(path), check_magic=False)


class TestSamplingParams:
    def test_default_like_profile_valid(self):
        validate_sampling_params({
            "temperature": 0.3, "top_p": 0.9, "top_k": 40, "min_p": 0.05,
            "repeat_penalty": 1.1, "frequency_penalty": 0.0,
            "presence_penalty": 0.0, "penalty_last_n": 64,
        })

    @pytest.mark.parametrize("params, message", [
        ({"temperature": -0.1}, "temperature"),
        ({"temperature": "hot"}, "temperature must be numeric"),
        ({"top_p": 0}, "top_p"),
        ({"top_p": 1.5}, "top_p"),
        ({"top_k": 2.5}, "top_k must be an integer"),
        ({"top_k": -1}, "top_k"),
        ({"min_p": 1.0}, "min_p"),
        ({"repeat_penalty": 0}, "repeat_penalty"),
        ({"presence_penalty": 3.0}, "presence_penalty"),
        ({"frequency_penalty": -2.5}, "frequency_penalty"),
        ({"penalty_last_n": -1}, "penalty_last_n"),
    ])
    def test_invalid_params(self, params, message):
        with pytest.raises(ValueError, match=message):
            validate_sampling_params(params)
