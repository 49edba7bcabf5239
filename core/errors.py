"""
ConsensusError hierarchy for the plan consensus engine.

Provides typed exceptions so callers can distinguish retryable provider
failures from fatal ones, and so logging/telemetry can categorize failures
without parsing message strings.

Hierarchy:
    ConsensusError                      (base of all engine errors)
    ├── ConfigurationError              (missing env vars, bad provider spec)
    ├── ProviderError                   (any provider adapter failure)
    │   ├── ProviderTimeout             (retryable, call exceeded its deadline)
    │   ├── ProviderAuthError           (bad / missing credentials)
    │   ├── ProviderRateLimit           (retryable, 429 or quota)
    │   ├── ModelNotFoundError          (unknown model id)
    │   └── ContextOverflowError        (prompt exceeds the context window)
    ├── SchemaInvalid                   (payload could not be aligned; repairable or not)
    ├── InsufficientProviders           (fewer than one provider succeeded)
    └── AdjudicationIncomplete          (a disagreement with no valid rationale)
"""

from typing import Any, Dict, List, Optional


class ConsensusError(Exception):
    """Base exception for all consensus engine errors."""

    def __init__(self, message: str, *, provider: Optional[str] = None,
                 stage: Optional[str] = None, cause: Optional[Exception] = None):
        self.provider = provider
        self.stage = stage
        self.cause = cause
        super().__init__(message)
        if cause and not self.__cause__:
            self.__cause__ = cause

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for logging / telemetry."""
        d = {
            "error_type": type(self).__name__,
            "message": str(self),
        }
        if self.provider:
            d["provider"] = self.provider
        if self.stage:
            d["stage"] = self.stage
        if self.cause:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return d


# ── Configuration ────────────────────────────────────────────────────

class ConfigurationError(ConsensusError):
    """Missing environment variable, unknown provider kind, bad config file."""
    pass


# ── Providers ────────────────────────────────────────────────────────

class ProviderError(ConsensusError):
    """Base for all provider adapter errors."""

    def __init__(self, message: str, *, provider: Optional[str] = None,
                 stage: Optional[str] = "dispatch", cause: Optional[Exception] = None,
                 retryable: bool = False):
        self.retryable = retryable
        super().__init__(message, provider=provider, stage=stage, cause=cause)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["retryable"] = self.retryable
        return d


class ProviderTimeout(ProviderError):
    """Call exceeded its per-call deadline."""

    def __init__(self, message: str = "Provider call timed out", **kwargs):
        super().__init__(message, retryable=True, **kwargs)


class ProviderAuthError(ProviderError):
    """Credentials rejected or missing; not retryable."""

    def __init__(self, message: str = "Provider authentication failed", **kwargs):
        super().__init__(message, retryable=False, **kwargs)


class ProviderRateLimit(ProviderError):
    """429 / quota exhausted."""

    def __init__(self, message: str = "Provider rate limit exceeded", **kwargs):
        super().__init__(message, retryable=True, **kwargs)


class ModelNotFoundError(ProviderError):
    """The configured model id does not exist for this provider."""

    def __init__(self, message: str = "Model not found", **kwargs):
        super().__init__(message, retryable=False, **kwargs)


class ContextOverflowError(ProviderError):
    """Prompt plus images exceed the model's context window."""

    def __init__(self, message: str = "Context window exceeded", **kwargs):
        super().__init__(message, retryable=False, **kwargs)


# ── Alignment / adjudication ─────────────────────────────────────────

class SchemaInvalid(ConsensusError):
    """Provider payload does not match the item/issue schema.

    ``repairable`` is False once every repair pass has been exhausted and
    only partial extraction remains.
    """

    def __init__(self, message: str = "Provider payload failed schema validation", *,
                 repairable: bool = True, reasons: Optional[List[str]] = None, **kwargs):
        self.repairable = repairable
        self.reasons = list(reasons or [])
        kwargs.setdefault("stage", "align")
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["repairable"] = self.repairable
        if self.reasons:
            d["reasons"] = self.reasons
        return d


class InsufficientProviders(ConsensusError):
    """No provider produced a usable response for this run."""

    def __init__(self, message: str = "No provider succeeded", *,
                 failures: Optional[List[Any]] = None, **kwargs):
        self.failures = list(failures or [])
        kwargs.setdefault("stage", "dispatch")
        super().__init__(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["failures"] = [
            f.to_dict() if hasattr(f, "to_dict") else str(f) for f in self.failures
        ]
        return d


class AdjudicationIncomplete(ConsensusError):
    """A disagreement reached the adjudicator without any valid rationale."""

    def __init__(self, message: str = "No valid rationale for disagreement", *,
                 item_key: Optional[str] = None, **kwargs):
        self.item_key = item_key
        kwargs.setdefault("stage", "adjudicate")
        super().__init__(message, **kwargs)
