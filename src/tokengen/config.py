"""
Configuration for Token Generation

Defines the per-call GenerationConfig and the engine-level EngineConfig.
EngineConfig follows a defaults -> YAML file -> explicit overrides merge so
the same engine can be driven from a config file or from code.
"""

import dataclasses
import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationConfig:
    """
    Immutable sampling and stopping controls for one generate call.

    When do_sample is False the sampler reduces to arg-max and every other
    sampling field is ignored.
    """

    do_sample: bool = True
    temperature: float = 0.2
    top_k: int = 40
    top_p: float = 0.9
    repeat_penalty: float = 1.1
    repeat_last_n: int = 32
    max_new_tokens: int = 512
    context_limit: int = 2048
    seed: int = -1
    stop_token_ids: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        # Accept lists from YAML/kwargs but keep the dataclass hashable
        if not isinstance(self.stop_token_ids, tuple):
            object.__setattr__(self, "stop_token_ids", tuple(self.stop_token_ids))

    def validate(self) -> "GenerationConfig":
        """
        Check that sampling is well defined.

        Top-k and top-p values outside their active ranges are not errors;
        they disable the corresponding filter.

        Raises:
            ConfigurationError: If any field makes generation ill-defined
        """
        if self.max_new_tokens <= 0:
            raise ConfigurationError(
                f"max_new_tokens must be positive, got {self.max_new_tokens}"
            )
        if self.context_limit <= 0:
            raise ConfigurationError(
                f"context_limit must be positive, got {self.context_limit}"
            )
        if self.do_sample:
            if math.isnan(self.temperature) or self.temperature < 0:
                raise ConfigurationError(
                    f"temperature must be >= 0, got {self.temperature}"
                )
            if self.top_k < 0:
                raise ConfigurationError(f"top_k must be >= 0, got {self.top_k}")
            if math.isnan(self.top_p) or self.top_p < 0:
                raise ConfigurationError(f"top_p must be >= 0, got {self.top_p}")
        if math.isnan(self.repeat_penalty) or self.repeat_penalty <= 0:
            raise ConfigurationError(
                f"repeat_penalty must be positive, got {self.repeat_penalty}"
            )
        if self.repeat_last_n < 0:
            raise ConfigurationError(
                f"repeat_last_n must be >= 0, got {self.repeat_last_n}"
            )
        return self

    def replace(self, **overrides: Any) -> "GenerationConfig":
        """Return a validated copy with the given fields replaced."""
        return dataclasses.replace(self, **overrides).validate()

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "GenerationConfig":
        """Build a config from a mapping, ignoring unknown keys."""
        names = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - names)
        if unknown:
            logger.debug(f"Ignoring unknown generation config keys: {unknown}")
        return cls(**{k: v for k, v in values.items() if k in names}).validate()

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class EngineConfig:
    """Engine-level configuration: models, backend and generation defaults."""

    model: str = "fake-target"
    draft_model: Optional[str] = None
    tokenizer: Optional[str] = None
    stop_tokens: Tuple[str, ...] = ()
    device: str = "auto"
    dtype: Optional[str] = None
    implementation: str = "fake"
    num_speculative_tokens: int = 4
    lookahead_controller: str = "fixed"
    max_iterations: int = 50
    deterministic: bool = False
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    @classmethod
    def load(
        cls, config_path: Optional[str] = None, **overrides: Any
    ) -> "EngineConfig":
        """
        Load configuration from defaults, an optional YAML file and overrides.

        Args:
            config_path: Path to a YAML configuration file
            **overrides: Explicit values that win over the file; None is ignored

        Returns:
            EngineConfig instance
        """
        config: Dict[str, Any] = {
            "model": "fake-target",
            "draft_model": None,
            "tokenizer": None,
            "stop_tokens": (),
            "device": "auto",
            "dtype": None,
            "implementation": "fake",
            "num_speculative_tokens": 4,
            "lookahead_controller": "fixed",
            "max_iterations": 50,
            "deterministic": False,
            "generation": {},
        }

        if config_path and Path(config_path).exists():
            try:
                with open(config_path, "r") as f:
                    loaded = yaml.safe_load(f) or {}
                config.update(loaded)
                logger.info(f"Loaded configuration from {config_path}")
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}")
                logger.info("Using default configuration")
        elif config_path:
            logger.warning(f"Config file not found: {config_path}, using defaults")

        generation_overrides = overrides.pop("generation", None) or {}
        config.update({k: v for k, v in overrides.items() if v is not None})

        env_device = os.getenv("TOKENGEN_DEVICE")
        if env_device:
            config["device"] = env_device
        if os.getenv("TOKENGEN_DETERMINISTIC", "0").lower() in ("1", "true", "yes"):
            config["deterministic"] = True

        generation = dict(config.pop("generation") or {})
        if isinstance(generation_overrides, GenerationConfig):
            generation_overrides = generation_overrides.to_dict()
        generation.update(generation_overrides)

        names = {f.name for f in dataclasses.fields(cls)}
        engine_values = {k: v for k, v in config.items() if k in names}
        if "stop_tokens" in engine_values:
            engine_values["stop_tokens"] = tuple(engine_values["stop_tokens"] or ())
        engine = cls(
            generation=GenerationConfig.from_dict(generation), **engine_values
        )
        return engine.validate()

    def validate(self) -> "EngineConfig":
        if self.implementation not in ("fake", "hf"):
            raise ConfigurationError(
                f"Unknown implementation: {self.implementation}. "
                f"Available: ['fake', 'hf']"
            )
        if self.num_speculative_tokens < 1:
            raise ConfigurationError(
                "num_speculative_tokens must be >= 1, "
                f"got {self.num_speculative_tokens}"
            )
        if self.lookahead_controller not in ("fixed", "adaptive"):
            raise ConfigurationError(
                f"Unknown lookahead controller: {self.lookahead_controller}. "
                f"Available: ['fixed', 'adaptive']"
            )
        if self.max_iterations < 1:
            raise ConfigurationError(
                f"max_iterations must be >= 1, got {self.max_iterations}"
            )
        self.generation.validate()
        return self
