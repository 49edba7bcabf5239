"""
Engine Configuration Loader

Loads consensus engine parameters (tolerances, matching thresholds, scoring
weights, dispatch timeouts, fusion policy, task parameters and the ordered
provider list) from an external config file (consensus_config.yaml).
Supports YAML and JSON formats with environment variable overrides.

Usage:
    from core.engine_config import load_engine_config

    config = load_engine_config()
    config.tolerance_for("LF")          # 0.02
    config.task_params("takeoff")       # TaskParams(max_tokens=4096, ...)
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .constants import DEFAULT_TOLERANCE, TOLERANCE_RULES
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Config file search locations (relative to project root)
CONFIG_LOCATIONS = [
    "consensus_config.yaml",
    "consensus_config.json",
    "config/consensus_config.yaml",
    "config/consensus_config.json",
]

_PROJECT_ROOT = Path(__file__).parent.parent

_env_loaded = False


def _ensure_env_loaded():
    """Ensure .env is loaded exactly once."""
    global _env_loaded
    if not _env_loaded:
        env_path = _PROJECT_ROOT / '.env'
        if env_path.exists():
            load_dotenv(env_path)
        _env_loaded = True


DEFAULT_CONFIG: Dict[str, Any] = {
    "tolerances": dict(TOLERANCE_RULES, default=DEFAULT_TOLERANCE),
    "matching": {
        "name_similarity": 0.7,
        "description_similarity": 0.7,
        "location_similarity": 0.6,
        "require_same_category": True,
    },
    "scoring": {
        "evidence_weight": 0.6,
        "consistency_weight": 0.4,
        "risk_threshold": 0.7,
        "default_item_confidence": 0.7,
        "partial_confidence_cap": 0.5,
    },
    "dispatch": {
        "timeout_base_s": 60.0,
        "timeout_per_chunk_s": 5.0,
        "timeout_ceiling_s": 240.0,
        "max_workers": 8,
        "max_image_chunks": 5,
    },
    "repair": {
        "budget": 4,
        "max_partial_items": 2000,
    },
    "checks": {
        "cost": False,
        "name": False,
        "location": False,
        "cost_tolerance": 0.05,
    },
    "fusion": {
        "policy": "union",
        "agreement_threshold": 0.3,
    },
    "recommendation": {
        "confidence_threshold": 0.7,
        "long_context_items": 100,
        "history_weight": 0.5,
    },
    "task_types": {
        "takeoff": {
            "max_tokens": 4096,
            "temperature": 0.2,
            "description": "Quantity takeoff with citations and quality analysis",
        },
        "quality": {
            "max_tokens": 4096,
            "temperature": 0.2,
            "description": "Plan completeness and consistency review",
        },
        "bid_analysis": {
            "max_tokens": 4096,
            "temperature": 0.1,
            "description": "Bid scope comparison",
        },
        "code_compliance": {
            "max_tokens": 4096,
            "temperature": 0.1,
            "description": "Building code compliance review",
        },
        "cost_estimation": {
            "max_tokens": 4096,
            "temperature": 0.1,
            "description": "Unit cost estimation",
        },
    },
    "providers": [
        {"kind": "openai", "model": "gpt-4o"},
        {"kind": "anthropic", "model": "claude-3-haiku-20240307"},
        {"kind": "xai", "model": "grok-4"},
        {"kind": "google", "model": "gemini-1.5-flash"},
    ],
}

FUSION_POLICIES = ("union", "agreement_threshold")


@dataclass
class TaskParams:
    """Generation parameters for one task type."""
    max_tokens: int = 4096
    temperature: float = 0.2
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "description": self.description,
        }


@dataclass
class EngineConfig:
    """Resolved engine configuration. Built by :func:`load_engine_config`."""
    tolerances: Dict[str, float] = field(default_factory=lambda: dict(TOLERANCE_RULES))
    default_tolerance: float = DEFAULT_TOLERANCE
    # matching
    name_similarity: float = 0.7
    description_similarity: float = 0.7
    location_similarity: float = 0.6
    require_same_category: bool = True
    # scoring
    evidence_weight: float = 0.6
    consistency_weight: float = 0.4
    risk_threshold: float = 0.7
    default_item_confidence: float = 0.7
    partial_confidence_cap: float = 0.5
    # dispatch
    timeout_base_s: float = 60.0
    timeout_per_chunk_s: float = 5.0
    timeout_ceiling_s: float = 240.0
    max_workers: int = 8
    max_image_chunks: int = 5
    # repair
    repair_budget: int = 4
    max_partial_items: int = 2000
    # optional disagreement checks
    check_cost: bool = False
    check_name: bool = False
    check_location: bool = False
    cost_tolerance: float = 0.05
    # fusion
    fusion_policy: str = "union"
    agreement_threshold: float = 0.3
    # recommendation
    recommendation_threshold: float = 0.7
    long_context_items: int = 100
    history_weight: float = 0.5
    task_types: Dict[str, TaskParams] = field(default_factory=dict)
    providers: List[Dict[str, Any]] = field(default_factory=list)

    def tolerance_for(self, unit: Any) -> float:
        """Relative quantity tolerance for a unit (enum or string)."""
        key = getattr(unit, "value", unit)
        return self.tolerances.get(str(key).upper(), self.default_tolerance)

    def task_params(self, task_type: Any) -> TaskParams:
        """Generation parameters for a task type, falling back to takeoff."""
        key = getattr(task_type, "value", task_type)
        if key in self.task_types:
            return self.task_types[key]
        return self.task_types.get("takeoff", TaskParams())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build from a (merged) config dict shaped like DEFAULT_CONFIG."""
        tolerances = {
            str(k).upper(): float(v)
            for k, v in (data.get("tolerances") or {}).items()
            if str(k).lower() != "default"
        }
        default_tol = float((data.get("tolerances") or {}).get("default", DEFAULT_TOLERANCE))
        matching = data.get("matching") or {}
        scoring = data.get("scoring") or {}
        dispatch = data.get("dispatch") or {}
        repair = data.get("repair") or {}
        checks = data.get("checks") or {}
        fusion = data.get("fusion") or {}
        rec = data.get("recommendation") or {}

        policy = str(fusion.get("policy", "union")).lower()
        if policy not in FUSION_POLICIES:
            raise ConfigurationError(
                f"Unknown fusion policy '{policy}'. Supported: {', '.join(FUSION_POLICIES)}",
                stage="config",
            )

        task_types = {
            name: TaskParams(
                max_tokens=int(params.get("max_tokens", 4096)),
                temperature=float(params.get("temperature", 0.2)),
                description=params.get("description", ""),
            )
            for name, params in (data.get("task_types") or {}).items()
        }

        return cls(
            tolerances=tolerances,
            default_tolerance=default_tol,
            name_similarity=float(matching.get("name_similarity", 0.7)),
            description_similarity=float(matching.get("description_similarity", 0.7)),
            location_similarity=float(matching.get("location_similarity", 0.6)),
            require_same_category=bool(matching.get("require_same_category", True)),
            evidence_weight=float(scoring.get("evidence_weight", 0.6)),
            consistency_weight=float(scoring.get("consistency_weight", 0.4)),
            risk_threshold=float(scoring.get("risk_threshold", 0.7)),
            default_item_confidence=float(scoring.get("default_item_confidence", 0.7)),
            partial_confidence_cap=float(scoring.get("partial_confidence_cap", 0.5)),
            timeout_base_s=float(dispatch.get("timeout_base_s", 60.0)),
            timeout_per_chunk_s=float(dispatch.get("timeout_per_chunk_s", 5.0)),
            timeout_ceiling_s=float(dispatch.get("timeout_ceiling_s", 240.0)),
            max_workers=int(dispatch.get("max_workers", 8)),
            max_image_chunks=int(dispatch.get("max_image_chunks", 5)),
            repair_budget=int(repair.get("budget", 4)),
            max_partial_items=int(repair.get("max_partial_items", 2000)),
            check_cost=bool(checks.get("cost", False)),
            check_name=bool(checks.get("name", False)),
            check_location=bool(checks.get("location", False)),
            cost_tolerance=float(checks.get("cost_tolerance", 0.05)),
            fusion_policy=policy,
            agreement_threshold=float(fusion.get("agreement_threshold", 0.3)),
            recommendation_threshold=float(rec.get("confidence_threshold", 0.7)),
            long_context_items=int(rec.get("long_context_items", 100)),
            history_weight=float(rec.get("history_weight", 0.5)),
            task_types=task_types,
            providers=list(data.get("providers") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view, for logging the effective configuration."""
        return {
            "tolerances": dict(self.tolerances, default=self.default_tolerance),
            "matching": {
                "name_similarity": self.name_similarity,
                "description_similarity": self.description_similarity,
                "location_similarity": self.location_similarity,
                "require_same_category": self.require_same_category,
            },
            "fusion": {
                "policy": self.fusion_policy,
                "agreement_threshold": self.agreement_threshold,
            },
            "task_types": {k: v.to_dict() for k, v in self.task_types.items()},
            "providers": self.providers,
        }


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base; nested dicts merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def find_config_file() -> Optional[Path]:
    """Search for config file in standard locations."""
    env_path = os.environ.get("CONSENSUS_CONFIG_PATH")
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path
        logger.warning(f"CONSENSUS_CONFIG_PATH points to missing file: {env_path}")

    for location in CONFIG_LOCATIONS:
        path = _PROJECT_ROOT / location
        if path.exists():
            return path

    return None


def parse_config_file(path: Path) -> Dict[str, Any]:
    """Parse YAML or JSON config file."""
    with open(path, 'r', encoding='utf-8') as f:
        content = f.read()

    try:
        if path.suffix in ('.yaml', '.yml'):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not parse config file {path}: {e}", stage="config", cause=e)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", stage="config")
    return data


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    """Apply environment variable overrides in place."""
    env_overrides = {
        "CONSENSUS_TIMEOUT_BASE": ("dispatch", "timeout_base_s", float),
        "CONSENSUS_TIMEOUT_CEILING": ("dispatch", "timeout_ceiling_s", float),
        "CONSENSUS_MAX_WORKERS": ("dispatch", "max_workers", int),
        "CONSENSUS_FUSION_POLICY": ("fusion", "policy", str),
        "CONSENSUS_AGREEMENT_THRESHOLD": ("fusion", "agreement_threshold", float),
    }

    for env_var, (section, key, type_fn) in env_overrides.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                config.setdefault(section, {})[key] = type_fn(value)
                logger.debug(f"Applied env override: {env_var}={value}")
            except ValueError as e:
                logger.warning(f"Failed to apply env override {env_var}: {e}")


def load_engine_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> EngineConfig:
    """
    Load the engine configuration.

    Args:
        path: Explicit config file. If None, searches CONSENSUS_CONFIG_PATH
            and the standard locations, falling back to built-in defaults.
        overrides: Dict merged on top of the file (useful in tests).

    Returns:
        EngineConfig

    Raises:
        ConfigurationError: If the file is missing, unparseable or invalid.
    """
    _ensure_env_loaded()

    data = copy.deepcopy(DEFAULT_CONFIG)
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}", stage="config")
    else:
        config_path = find_config_file()

    if config_path:
        data = _deep_merge(data, parse_config_file(config_path))
        logger.debug(f"Loaded engine config from {config_path}")
    else:
        logger.debug("No engine config file found, using defaults")

    _apply_env_overrides(data)
    if overrides:
        data = _deep_merge(data, overrides)

    return EngineConfig.from_dict(data)


def default_engine_config() -> EngineConfig:
    """Built-in defaults only; ignores files and environment."""
    return EngineConfig.from_dict(copy.deepcopy(DEFAULT_CONFIG))
