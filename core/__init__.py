"""
Core utilities for the plan consensus engine.

Shared by every stage:
- Constants (tolerances, confidence thresholds, markers)
- Engine configuration loading
- Error hierarchy
- Logging configuration
"""

from .constants import (
    SYSTEM_NAME,
    SYSTEM_VERSION,
    TOLERANCE_RULES,
    DEFAULT_TOLERANCE,
    RISK_CONFIDENCE_THRESHOLD,
    DEFAULT_ITEM_CONFIDENCE,
    PARTIAL_CONFIDENCE_CAP,
)
from .engine_config import (
    EngineConfig,
    TaskParams,
    load_engine_config,
    default_engine_config,
)
from .errors import (
    ConsensusError,
    ConfigurationError,
    ProviderError,
    ProviderTimeout,
    ProviderAuthError,
    ProviderRateLimit,
    ModelNotFoundError,
    ContextOverflowError,
    SchemaInvalid,
    InsufficientProviders,
    AdjudicationIncomplete,
)
from .logging_config import configure_logging, ProviderLoggerAdapter

__all__ = [
    # Constants
    'SYSTEM_NAME',
    'SYSTEM_VERSION',
    'TOLERANCE_RULES',
    'DEFAULT_TOLERANCE',
    'RISK_CONFIDENCE_THRESHOLD',
    'DEFAULT_ITEM_CONFIDENCE',
    'PARTIAL_CONFIDENCE_CAP',
    # Configuration
    'EngineConfig',
    'TaskParams',
    'load_engine_config',
    'default_engine_config',
    # Errors
    'ConsensusError',
    'ConfigurationError',
    'ProviderError',
    'ProviderTimeout',
    'ProviderAuthError',
    'ProviderRateLimit',
    'ModelNotFoundError',
    'ContextOverflowError',
    'SchemaInvalid',
    'InsufficientProviders',
    'AdjudicationIncomplete',
    # Logging
    'configure_logging',
    'ProviderLoggerAdapter',
]
