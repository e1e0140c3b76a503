"""
HyperMnemo Configuration System
===============================
Centralized, validated configuration with environment variable overrides.
"""

import os
from pathlib import Path
from typing import Dict, Optional
from dataclasses import dataclass, field

import yaml

from hypermnemo.core.exceptions import ConfigurationError


TIER_NAMES = ("episodic", "semantic", "procedural", "working", "meta")
CONSOLIDATION_STRATEGIES = ("temporal", "semantic")
COMPRESSION_ALGORITHMS = ("zlib", "gzip", "lzma")


@dataclass(frozen=True)
class IndexConfig:
    dimension: int = 64
    max_entries: int = 0  # 0 = unbounded
    max_norm: float = 1.0 - 1e-5


@dataclass(frozen=True)
class AddressingConfig:
    """Hierarchical-deterministic identity addressing."""
    root_seed: str = "hypermnemo-root"
    identity_root_path: tuple = (0,)
    max_depth: int = 32
    radius_step: float = 0.35
    max_radius: float = 0.999
    branch_spread: float = 0.6


@dataclass(frozen=True)
class EmbeddingConfig:
    """Content + context projection into the Poincaré ball."""
    base_radius: float = 0.45
    radius_gain: float = 0.15
    max_radius: float = 0.95
    context_weight: float = 0.35


@dataclass(frozen=True)
class TierPolicy:
    consolidation_threshold: Optional[int] = None  # live entries before auto-consolidation
    compression_threshold: Optional[int] = None    # live entries before compression applies
    compression_age_seconds: Optional[int] = None  # entries older than this are compressible


@dataclass(frozen=True)
class ConsolidationConfig:
    enabled: bool = True
    strategy: str = "semantic"
    epsilon: float = 0.5
    time_window_seconds: int = 3600
    k_neighbors: int = 3
    min_group_size: int = 2


@dataclass(frozen=True)
class CompressionConfig:
    enabled: bool = True
    algorithm: str = "zlib"
    level: int = 6
    lossy_level: int = 7  # levels at or above this also collapse whitespace


@dataclass(frozen=True)
class StateConfig:
    schema_version: int = 1
    storage_key: str = "hypermnemo/state"
    max_checkpoints: int = 0  # 0 = unlimited


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"
    structured_logging: bool = False


def _default_tiers() -> Dict[str, TierPolicy]:
    return {
        "episodic": TierPolicy(consolidation_threshold=1000, compression_age_seconds=30 * 86400),
        "semantic": TierPolicy(consolidation_threshold=5000),
        "procedural": TierPolicy(),
        "working": TierPolicy(consolidation_threshold=200, compression_threshold=500),
        "meta": TierPolicy(),
    }


@dataclass(frozen=True)
class HyperMnemoConfig:
    """Root configuration for the HyperMnemo core."""

    version: str = "1.0"
    index: IndexConfig = field(default_factory=IndexConfig)
    addressing: AddressingConfig = field(default_factory=AddressingConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    tiers: Dict[str, TierPolicy] = field(default_factory=_default_tiers)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    state: StateConfig = field(default_factory=StateConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @property
    def dimension(self) -> int:
        return self.index.dimension

    def tier_policy(self, tier: str) -> TierPolicy:
        return self.tiers.get(tier) or TierPolicy()


def _env_override(key: str, default):
    """Check for HYPERMNEMO_<KEY> environment variable override."""
    env_key = f"HYPERMNEMO_{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    if isinstance(default, bool):
        return val.lower() in ("true", "1", "yes")
    if isinstance(default, int):
        return int(val)
    if isinstance(default, float):
        return float(val)
    return val


def _parse_optional_positive_int(value: Optional[object]) -> Optional[int]:
    """Parse positive int values. Non-positive/invalid values become None."""
    if value is None:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _build_tier(name: str, raw: dict, default: TierPolicy) -> TierPolicy:
    prefix = f"TIERS_{name.upper()}"
    return TierPolicy(
        consolidation_threshold=_parse_optional_positive_int(
            _env_override(f"{prefix}_CONSOLIDATION_THRESHOLD",
                          raw.get("consolidation_threshold", default.consolidation_threshold))
        ),
        compression_threshold=_parse_optional_positive_int(
            _env_override(f"{prefix}_COMPRESSION_THRESHOLD",
                          raw.get("compression_threshold", default.compression_threshold))
        ),
        compression_age_seconds=_parse_optional_positive_int(
            _env_override(f"{prefix}_COMPRESSION_AGE_SECONDS",
                          raw.get("compression_age_seconds", default.compression_age_seconds))
        ),
    )


def _validate(config: HyperMnemoConfig) -> None:
    if config.index.dimension < 2:
        raise ConfigurationError(
            config_key="index.dimension",
            reason=f"Dimension must be at least 2, got {config.index.dimension}",
        )
    if not 0.0 < config.index.max_norm < 1.0:
        raise ConfigurationError("index.max_norm", "must lie strictly inside (0, 1)")
    if not 0.0 < config.addressing.max_radius < 1.0:
        raise ConfigurationError("addressing.max_radius", "must lie strictly inside (0, 1)")
    if not 0.0 < config.embedding.max_radius < 1.0:
        raise ConfigurationError("embedding.max_radius", "must lie strictly inside (0, 1)")
    if config.addressing.max_depth < 1:
        raise ConfigurationError("addressing.max_depth", "must be at least 1")
    if config.consolidation.epsilon <= 0:
        raise ConfigurationError("consolidation.epsilon", "must be positive")
    if config.consolidation.min_group_size < 2:
        raise ConfigurationError("consolidation.min_group_size", "must be at least 2")
    if not 0 <= config.compression.level <= 9:
        raise ConfigurationError(
            "compression.level", f"must be within 0-9, got {config.compression.level}"
        )
    if config.compression.algorithm not in COMPRESSION_ALGORITHMS:
        raise ConfigurationError(
            "compression.algorithm",
            f"unsupported algorithm '{config.compression.algorithm}'",
            {"supported": list(COMPRESSION_ALGORITHMS)},
        )
    unknown = set(config.tiers) - set(TIER_NAMES)
    if unknown:
        raise ConfigurationError("tiers", f"unknown tiers {sorted(unknown)}")


def load_config(path: Optional[Path] = None) -> HyperMnemoConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Priority: ENV > YAML > defaults.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml and the
            repository root.

    Returns:
        Validated HyperMnemoConfig instance.

    Raises:
        ConfigurationError: If a value is out of range.
    """
    if path is None:
        # Search common locations
        candidates = [
            Path("config.yaml"),
            Path(__file__).parent.parent.parent.parent / "config.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    raw = {}
    if path is not None and Path(path).exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
            raw = loaded.get("hypermnemo") or {}

    # Build index config
    idx_raw = raw.get("index") or {}
    index = IndexConfig(
        dimension=_env_override("DIMENSION", idx_raw.get("dimension", 64)),
        max_entries=_env_override("INDEX_MAX_ENTRIES", idx_raw.get("max_entries", 0)),
        max_norm=idx_raw.get("max_norm", 1.0 - 1e-5),
    )

    # Build addressing config
    addr_raw = raw.get("addressing") or {}
    addressing = AddressingConfig(
        root_seed=_env_override("ROOT_SEED", addr_raw.get("root_seed", "hypermnemo-root")),
        identity_root_path=tuple(addr_raw.get("identity_root_path", (0,))),
        max_depth=addr_raw.get("max_depth", 32),
        radius_step=addr_raw.get("radius_step", 0.35),
        max_radius=addr_raw.get("max_radius", 0.999),
        branch_spread=addr_raw.get("branch_spread", 0.6),
    )

    # Build embedding config
    emb_raw = raw.get("embedding") or {}
    embedding = EmbeddingConfig(
        base_radius=emb_raw.get("base_radius", 0.45),
        radius_gain=emb_raw.get("radius_gain", 0.15),
        max_radius=emb_raw.get("max_radius", 0.95),
        context_weight=emb_raw.get("context_weight", 0.35),
    )

    # Build tier policies
    tiers_raw = raw.get("tiers") or {}
    defaults = _default_tiers()
    tiers = {
        name: _build_tier(name, tiers_raw.get(name) or {}, defaults[name])
        for name in TIER_NAMES
    }
    for name in tiers_raw:
        if name not in tiers:
            tiers[name] = TierPolicy()

    # Build consolidation config
    cons_raw = raw.get("consolidation") or {}
    consolidation = ConsolidationConfig(
        enabled=_env_override("CONSOLIDATION_ENABLED", cons_raw.get("enabled", True)),
        strategy=_env_override("CONSOLIDATION_STRATEGY", cons_raw.get("strategy", "semantic")),
        epsilon=_env_override("CONSOLIDATION_EPSILON", cons_raw.get("epsilon", 0.5)),
        time_window_seconds=_env_override(
            "CONSOLIDATION_TIME_WINDOW_SECONDS", cons_raw.get("time_window_seconds", 3600)
        ),
        k_neighbors=_env_override("CONSOLIDATION_K_NEIGHBORS", cons_raw.get("k_neighbors", 3)),
        min_group_size=cons_raw.get("min_group_size", 2),
    )

    # Build compression config
    comp_raw = raw.get("compression") or {}
    compression = CompressionConfig(
        enabled=_env_override("COMPRESSION_ENABLED", comp_raw.get("enabled", True)),
        algorithm=_env_override("COMPRESSION_ALGORITHM", comp_raw.get("algorithm", "zlib")),
        level=_env_override("COMPRESSION_LEVEL", comp_raw.get("level", 6)),
        lossy_level=comp_raw.get("lossy_level", 7),
    )

    # Build state config
    state_raw = raw.get("state") or {}
    state = StateConfig(
        schema_version=state_raw.get("schema_version", 1),
        storage_key=_env_override("STATE_STORAGE_KEY", state_raw.get("storage_key", "hypermnemo/state")),
        max_checkpoints=_env_override("MAX_CHECKPOINTS", state_raw.get("max_checkpoints", 0)),
    )

    # Build observability config
    obs_raw = raw.get("observability") or {}
    observability = ObservabilityConfig(
        log_level=_env_override("LOG_LEVEL", obs_raw.get("log_level", "INFO")),
        structured_logging=_env_override(
            "STRUCTURED_LOGGING", obs_raw.get("structured_logging", False)
        ),
    )

    config = HyperMnemoConfig(
        version=str(raw.get("version", "1.0")),
        index=index,
        addressing=addressing,
        embedding=embedding,
        tiers=tiers,
        consolidation=consolidation,
        compression=compression,
        state=state,
        observability=observability,
    )
    _validate(config)
    return config


# Module-level singleton (lazy-loaded)
_CONFIG: Optional[HyperMnemoConfig] = None


def get_config() -> HyperMnemoConfig:
    """Get or initialize the global config singleton."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config():
    """Reset the global config singleton (useful for testing)."""
    global _CONFIG
    _CONFIG = None
