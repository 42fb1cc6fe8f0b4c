"""
Python Configuration Loader

Loads runtime configuration from YAML files to eliminate hardcoded values.
Every tunable of the generation pipeline (context window, batch size,
token ceilings, tier output caps, sampling profiles, memory preflight
threshold) lives in config/runtime.yaml.
"""

import logging
import os
import threading
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CRISPIFY_CONFIG"

DEFAULT_SAMPLING_PROFILE: Dict[str, Any] = {
    "temperature": 0.3,
    "top_p": 0.9,
    "top_k": 40,
    "min_p": 0.05,
    "repeat_penalty": 1.1,
    "frequency_penalty": 0.0,
    "presence_penalty": 0.0,
    "penalty_last_n": 64,
}


class Config:
    """Runtime configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Model / engine parameters
        model = config_dict.get("model", {})
        self.context_length = model.get("context_length", 2048)
        self.batch_size = model.get("batch_size", 128)
        self.n_threads = model.get("threads", 4)
        self.n_threads_batch = model.get("threads_batch", self.n_threads)
        self.gpu_layers = model.get("gpu_layers", 0)
        self.min_model_size_bytes = model.get("min_model_size_bytes", 0)
        self.verify_gguf_magic = model.get("verify_gguf_magic", True)
        self.sampling_profile = model.get("sampling_profile", "default")
        self.seed = model.get("seed")

        # Request limits
        limits = config_dict.get("limits", {})
        self.max_input_tokens = limits.get("max_input_tokens", 1000)
        self.max_prompt_tokens = limits.get("max_prompt_tokens", 1200)
        self.context_headroom_tokens = limits.get("context_headroom_tokens", 100)
        self.memory_threshold_mb = limits.get("memory_threshold_mb", 100)

        # Prompt construction and output caps
        generation = config_dict.get("generation", {})
        self.short_tier_max_words = generation.get("short_tier_max_words", 25)
        self.medium_tier_max_words = generation.get("medium_tier_max_words", 75)
        max_output = generation.get("max_output_tokens", {})
        self.max_output_tokens = {
            "short": max_output.get("short", 150),
            "medium": max_output.get("medium", 300),
            "long": max_output.get("long", 500),
        }
        few_shot = generation.get("few_shot", {})
        self.few_shot_enabled = few_shot.get("enabled", True)
        self.few_shot_max_prompt_tokens = few_shot.get("max_prompt_tokens", 400)
        self.few_shot_min_words = few_shot.get("min_words", 15)
        self.use_chat_template = generation.get("use_chat_template", True)

        # Sampling profiles: profile name -> parameter dict
        profiles = config_dict.get("sampling_profiles", {})
        self.sampling_profiles: Dict[str, Dict[str, Any]] = {
            name: {**DEFAULT_SAMPLING_PROFILE, **(values or {})}
            for name, values in profiles.items()
        }
        self.sampling_profiles.setdefault("default", dict(DEFAULT_SAMPLING_PROFILE))

        # Python Bridge (stdio runtime)
        py_bridge = config_dict.get("python_bridge", {})
        self.max_buffer_size = py_bridge.get("max_buffer_size", 1_048_576)
        self.stream_queue_size = py_bridge.get("stream_queue_size", 100)
        self.queue_put_timeout_s = py_bridge.get("queue_put_timeout_s", 1.0)
        self.use_messagepack = py_bridge.get("use_messagepack", False)

        # Telemetry
        telemetry = config_dict.get("telemetry", {})
        self.telemetry_enabled = telemetry.get("enabled", True)
        self.telemetry_sampling_rate = telemetry.get("sampling_rate", 1.0)

        # Diagnostics (opt-in, privacy preserving)
        diagnostics = config_dict.get("diagnostics", {})
        self.diagnostics_enabled = diagnostics.get("enabled", False)
        self.diagnostics_max_metrics = diagnostics.get("max_stored_metrics", 100)

        # Development
        dev = config_dict.get("development", {})
        self.verbose = dev.get("verbose", False)
        self.debug = dev.get("debug", False)

    @property
    def memory_threshold_bytes(self) -> int:
        return int(self.memory_threshold_mb * 1024 * 1024)

    def sampling_params(self, profile: Optional[str] = None) -> Dict[str, Any]:
        """Return the sampling parameters of a profile (active profile by default)"""
        name = profile or self.sampling_profile
        if name not in self.sampling_profiles:
            raise ValueError(f"Unknown sampling profile: {name}")
        return dict(self.sampling_profiles[name])

    def validate(self) -> None:
        """
        Validate configuration values

        Catches invalid config values at startup instead of at request time.

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.context_length < 64:
            raise ValueError(f"context_length must be >= 64, got {self.context_length}")

        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")

        if self.n_threads < 1 or self.n_threads_batch < 1:
            raise ValueError(f"threads must be >= 1, got {self.n_threads}/{self.n_threads_batch}")

        if self.gpu_layers < 0:
            raise ValueError(f"gpu_layers must be >= 0, got {self.gpu_layers}")

        if self.max_input_tokens < 1:
            raise ValueError(f"max_input_tokens must be >= 1, got {self.max_input_tokens}")

        if self.max_prompt_tokens < self.max_input_tokens:
            raise ValueError(
                f"max_prompt_tokens ({self.max_prompt_tokens}) must be >= "
                f"max_input_tokens ({self.max_input_tokens})"
            )

        if self.context_headroom_tokens < 0:
            raise ValueError(
                f"context_headroom_tokens must be >= 0, got {self.context_headroom_tokens}"
            )

        if self.memory_threshold_mb < 0:
            raise ValueError(f"memory_threshold_mb must be >= 0, got {self.memory_threshold_mb}")

        if not 0 < self.short_tier_max_words < self.medium_tier_max_words:
            raise ValueError(
                "tier word limits must satisfy 0 < short_tier_max_words < medium_tier_max_words"
            )

        for tier, cap in self.max_output_tokens.items():
            if cap < 1:
                raise ValueError(f"max_output_tokens.{tier} must be >= 1, got {cap}")

        if self.sampling_profile not in self.sampling_profiles:
            raise ValueError(f"sampling_profile '{self.sampling_profile}' is not defined")

        if self.telemetry_sampling_rate < 0 or self.telemetry_sampling_rate > 1.0:
            raise ValueError(
                f"telemetry_sampling_rate must be in range [0, 1], got {self.telemetry_sampling_rate}"
            )

        if self.diagnostics_max_metrics < 1:
            raise ValueError(
                f"diagnostics max_stored_metrics must be >= 1, got {self.diagnostics_max_metrics}"
            )

        if self.max_buffer_size < 1024:
            raise ValueError(f"max_buffer_size must be >= 1024 bytes, got {self.max_buffer_size}")

        # Imported here: validators depends on this module
        from .validators import validate_sampling_params

        for name, params in self.sampling_profiles.items():
            try:
                validate_sampling_params(params)
            except ValueError as exc:
                raise ValueError(f"sampling_profiles.{name}: {exc}") from exc


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _find_config_file() -> Optional[str]:
    """Search upwards from the package for config/runtime.yaml"""
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return env_path

    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        candidate = current / "config" / "runtime.yaml"
        if candidate.exists():
            return str(candidate)
        parent = current.parent
        if parent == current:
            break
        current = parent
    return None


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to $CRISPIFY_CONFIG or
            the nearest config/runtime.yaml above the package)
        environment: Environment name (production/development/test)

    Returns:
        Validated Config instance

    Raises:
        FileNotFoundError: If an explicit config file is not found
        ValueError: If config file is invalid
    """
    if config_path is None:
        config_path = _find_config_file()

    if config_path is None:
        logger.warning("No runtime.yaml found, using built-in configuration defaults")
        base_config: Dict[str, Any] = {}
    else:
        try:
            with open(config_path, "r") as f:
                base_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    # Determine environment
    env = environment or os.getenv("CRISPIFY_ENV") or os.getenv("PYTHON_ENV") or "development"

    # Apply environment-specific overrides
    final_config = base_config
    if "environments" in base_config and env in base_config["environments"]:
        env_overrides = base_config["environments"][env] or {}
        final_config = deep_merge(base_config, env_overrides)

    # Remove environments section
    final_config = {k: v for k, v in final_config.items() if k != "environments"}

    config = Config(final_config)
    config.validate()
    return config


# Global config instance
_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Initialize global configuration (thread-safe)"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Get global configuration (lazy initialization)

    Thread-safe implementation using double-checked locking so concurrent
    first callers never load the file twice.
    """
    global _global_config

    # First check (no lock) - fast path for already-initialized case
    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config


def reset_config() -> None:
    """Drop the global configuration (tests and runtime restarts)"""
    global _global_config
    with _config_lock:
        _global_config = None
