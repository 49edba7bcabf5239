"""Centralised constants used across the plan consensus engine."""

# System metadata
SYSTEM_NAME: str = "PlanConsensus"
SYSTEM_VERSION: str = "0.1.0"

# Relative quantity tolerance per unit before providers are said to disagree
TOLERANCE_RULES = {
    "LF": 0.02,  # linear feet
    "SF": 0.02,  # square feet
    "CF": 0.02,  # cubic feet
    "CY": 0.02,  # cubic yards
    "EA": 0.01,  # each
    "SQ": 0.02,  # roofing squares (100 SF)
}
DEFAULT_TOLERANCE: float = 0.02

# Absorbs float noise so a deviation of exactly the tolerance counts as within it
TOLERANCE_EPSILON: float = 1e-9

# Items below this confidence carry a risk flag
RISK_CONFIDENCE_THRESHOLD: float = 0.7

# Confidence assumed for items whose provider did not state one
DEFAULT_ITEM_CONFIDENCE: float = 0.7

# Confidence ceiling for items salvaged by partial extraction
PARTIAL_CONFIDENCE_CAP: float = 0.5

# adjudicated_by markers that are not provider ids
CONSENSUS_MARKER: str = "consensus"
UNRESOLVED_MARKER: str = "none"

TASK_TYPES = ("takeoff", "quality", "bid_analysis", "code_compliance", "cost_estimation")
