"""Configuration loader for agent_playbook.

Loads from configs/default.toml (built-in defaults when the file is absent)
and overrides with CASS_MEMORY_* environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "default.toml"


@dataclass
class ScoringConfig:
    decay_half_life_days: float = 90.0
    harmful_multiplier: float = 4.0
    min_feedback_for_active: int = 3
    min_helpful_for_proven: int = 10
    max_harmful_ratio_for_proven: float = 0.1
    # Stricter than the proven disqualification ratio; exceeding it deprecates
    deprecation_harmful_ratio: float = 0.4
    maturity_multipliers: dict[str, float] = field(
        default_factory=lambda: {
            "candidate": 0.5,
            "established": 1.0,
            "proven": 1.5,
            "deprecated": 0.0,
        }
    )


@dataclass
class CurationConfig:
    dedup_similarity_threshold: float = 0.85
    prune_harmful_threshold: int = 3
    prune_policy: str = "retain"
    min_content_length: int = 10


@dataclass
class ValidationConfig:
    enabled: bool = True
    lookback_days: int = 90
    min_content_length: int = 15
    gate_search_limit: int = 20
    evidence_search_limit: int = 10
    auto_accept_sessions: int = 5
    auto_reject_sessions: int = 3


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.3
    max_tokens: int = 2048
    fallback_enabled: bool = True


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    call_timeout: float = 60.0
    overall_timeout: float = 180.0


@dataclass
class LockConfig:
    max_retries: int = 20
    retry_delay: float = 0.1


@dataclass
class PathsConfig:
    playbook_path: str = "~/.cass-memory/playbook.yaml"
    repo_playbook_dir: str = ".cass"
    reflections_dir: str = "~/.cass-memory/reflections"
    search_binary: str = "cass"
    search_timeout: float = 30.0
    # Extra search binaries (name -> path) queried alongside the local one
    remote_search_binaries: dict[str, str] = field(default_factory=dict)


@dataclass
class ReflectionConfig:
    max_iterations: int = 3
    max_deltas: int = 20
    session_lookback_days: int = 7


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"


@dataclass
class PlaybookConfig:
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    curation: CurationConfig = field(default_factory=CurationConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    reflection: ReflectionConfig = field(default_factory=ReflectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def global_playbook_path(self) -> Path:
        return Path(self.paths.playbook_path).expanduser()


def _validate_config(config: PlaybookConfig) -> None:
    """Validate configuration values.

    Args:
        config: PlaybookConfig to validate

    Raises:
        ValueError: If validation fails
    """
    scoring = config.scoring
    if scoring.decay_half_life_days <= 0:
        val = scoring.decay_half_life_days
        raise ValueError(f"scoring.decay_half_life_days must be > 0, got {val}")
    if scoring.harmful_multiplier < 0:
        raise ValueError(f"scoring.harmful_multiplier must be >= 0, got {scoring.harmful_multiplier}")
    if scoring.min_feedback_for_active < 1:
        val = scoring.min_feedback_for_active
        raise ValueError(f"scoring.min_feedback_for_active must be >= 1, got {val}")
    if not 0.0 <= scoring.max_harmful_ratio_for_proven <= 1.0:
        val = scoring.max_harmful_ratio_for_proven
        raise ValueError(f"scoring.max_harmful_ratio_for_proven must be in [0.0, 1.0], got {val}")
    if not scoring.max_harmful_ratio_for_proven < scoring.deprecation_harmful_ratio <= 1.0:
        val = scoring.deprecation_harmful_ratio
        raise ValueError(
            "scoring.deprecation_harmful_ratio must be above max_harmful_ratio_for_proven "
            f"and <= 1.0, got {val}"
        )
    missing = {"candidate", "established", "proven", "deprecated"} - set(scoring.maturity_multipliers)
    if missing:
        raise ValueError(f"scoring.maturity_multipliers is missing {sorted(missing)}")

    if not 0.0 <= config.curation.dedup_similarity_threshold <= 1.0:
        val = config.curation.dedup_similarity_threshold
        raise ValueError(f"curation.dedup_similarity_threshold must be in [0.0, 1.0], got {val}")
    if config.curation.prune_policy not in ("retain", "delete"):
        val = config.curation.prune_policy
        raise ValueError(f"curation.prune_policy must be 'retain' or 'delete', got {val}")

    if config.retry.max_retries < 0:
        raise ValueError(f"retry.max_retries must be >= 0, got {config.retry.max_retries}")
    if config.retry.base_delay < 0 or config.retry.max_delay < config.retry.base_delay:
        raise ValueError("retry delays must satisfy 0 <= base_delay <= max_delay")

    if config.lock.max_retries < 1:
        raise ValueError(f"lock.max_retries must be >= 1, got {config.lock.max_retries}")

    # Validate logging level
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if config.logging.level.upper() not in valid_levels:
        raise ValueError(f"logging.level must be one of {valid_levels}, got {config.logging.level}")

    if config.llm.temperature < 0.0 or config.llm.temperature > 2.0:
        raise ValueError(f"llm.temperature must be in [0.0, 2.0], got {config.llm.temperature}")
    if config.llm.max_tokens < 1:
        raise ValueError(f"llm.max_tokens must be >= 1, got {config.llm.max_tokens}")


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes")


def load_config(config_path: Path | None = None) -> PlaybookConfig:
    """Load configuration from TOML file and override with env vars.

    Args:
        config_path: Path to TOML config file. Defaults to configs/default.toml;
            built-in defaults are used when that file does not exist.

    Returns:
        PlaybookConfig instance with merged configuration

    Raises:
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config_dict: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

    def section(name: str) -> dict[str, Any]:
        return config_dict.get(name, {})

    scoring_dict = dict(section("scoring"))
    multipliers = {
        **ScoringConfig().maturity_multipliers,
        **scoring_dict.pop("maturity_multipliers", {}),
    }
    scoring = ScoringConfig(**scoring_dict, maturity_multipliers=multipliers)
    scoring.decay_half_life_days = float(
        os.getenv("CASS_MEMORY_DECAY_HALF_LIFE", scoring.decay_half_life_days)
    )

    curation = CurationConfig(**section("curation"))
    curation.dedup_similarity_threshold = float(
        os.getenv("CASS_MEMORY_DEDUP_THRESHOLD", curation.dedup_similarity_threshold)
    )
    curation.prune_harmful_threshold = int(
        os.getenv("CASS_MEMORY_PRUNE_HARMFUL_THRESHOLD", curation.prune_harmful_threshold)
    )
    curation.prune_policy = os.getenv("CASS_MEMORY_PRUNE_POLICY", curation.prune_policy)

    validation = ValidationConfig(**section("validation"))
    validation.enabled = _env_bool("CASS_MEMORY_VALIDATION_ENABLED", validation.enabled)
    validation.lookback_days = int(
        os.getenv("CASS_MEMORY_VALIDATION_LOOKBACK_DAYS", validation.lookback_days)
    )

    llm = LLMConfig(**section("llm"))
    llm.provider = os.getenv("CASS_MEMORY_LLM_PROVIDER", llm.provider)
    llm.model = os.getenv("CASS_MEMORY_LLM_MODEL", llm.model)
    llm.temperature = float(os.getenv("CASS_MEMORY_LLM_TEMPERATURE", llm.temperature))
    llm.max_tokens = int(os.getenv("CASS_MEMORY_LLM_MAX_TOKENS", llm.max_tokens))
    llm.fallback_enabled = _env_bool("CASS_MEMORY_LLM_FALLBACK", llm.fallback_enabled)

    retry = RetryConfig(**section("retry"))
    retry.max_retries = int(os.getenv("CASS_MEMORY_LLM_MAX_RETRIES", retry.max_retries))

    lock = LockConfig(**section("lock"))

    paths = PathsConfig(**section("paths"))
    paths.playbook_path = os.getenv("CASS_MEMORY_PLAYBOOK_PATH", paths.playbook_path)
    paths.reflections_dir = os.getenv("CASS_MEMORY_REFLECTIONS_DIR", paths.reflections_dir)
    paths.search_binary = os.getenv("CASS_PATH", paths.search_binary)

    reflection = ReflectionConfig(**section("reflection"))

    logging_config = LoggingConfig(**section("logging"))
    logging_config.level = os.getenv("CASS_MEMORY_LOG_LEVEL", logging_config.level)
    logging_config.format = os.getenv("CASS_MEMORY_LOG_FORMAT", logging_config.format)

    config = PlaybookConfig(
        scoring=scoring,
        curation=curation,
        validation=validation,
        llm=llm,
        retry=retry,
        lock=lock,
        paths=paths,
        reflection=reflection,
        logging=logging_config,
    )

    # Validate before returning
    _validate_config(config)

    return config


# Global config instance
_config: PlaybookConfig | None = None


def get_config() -> PlaybookConfig:
    """Get the global config instance, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    global _config
    _config = None
