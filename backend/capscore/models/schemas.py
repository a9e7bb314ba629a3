from pydantic import BaseModel, Field
from typing import Optional, Any
from enum import Enum


class Direction(str, Enum):
    """Which end of a measured value scores better."""
    HIGHER = "higher"
    LOWER = "lower"


class ZoningCategory(str, Enum):
    """Broad zoning categories derived from zone-class codes."""
    RESIDENTIAL = "residential"
    BUSINESS = "business"
    COMMERCIAL = "commercial"
    DOWNTOWN = "downtown"
    INDUSTRIAL = "industrial"
    PLANNED = "planned"
    OTHER = "other"


# =============================================================================
# Requirement (Gate) Models
# =============================================================================


class StationProximityRequirement(BaseModel):
    """Exclude segments farther than `distance` miles from every station."""
    enabled: bool = False
    distance: float = Field(default=0.5, gt=0)  # miles


class NeighborhoodRequirement(BaseModel):
    """Keep only segments touching one of the selected neighborhoods."""
    enabled: bool = False
    selected: list[str] = []


class ZoningRequirement(BaseModel):
    """Keep only segments touching a zoning district of an allowed category."""
    enabled: bool = False
    allowed: list[ZoningCategory] = []


class FundingRequirement(BaseModel):
    """Keep only segments touching a funding district (SSA or TIF)."""
    enabled: bool = False


class BridgeAgeRequirement(BaseModel):
    """Exclude segments whose nearest bridge of known age is older than `threshold`."""
    enabled: bool = False
    threshold: float = Field(default=80, ge=0)  # years


class Requirements(BaseModel):
    """Hard eligibility gates, evaluated in declaration order."""
    station_proximity: StationProximityRequirement = Field(default_factory=StationProximityRequirement)
    neighborhoods: NeighborhoodRequirement = Field(default_factory=NeighborhoodRequirement)
    zoning: ZoningRequirement = Field(default_factory=ZoningRequirement)
    ssa: FundingRequirement = Field(default_factory=FundingRequirement)
    tif: FundingRequirement = Field(default_factory=FundingRequirement)
    bridge_age: BridgeAgeRequirement = Field(default_factory=BridgeAgeRequirement)


# =============================================================================
# Feature Models
# =============================================================================


class FeatureConfig(BaseModel):
    """Weight, search radius and direction for one scored feature."""
    weight: int = Field(default=0, ge=0, le=10)
    radius: float = Field(default=1.0, gt=0)  # miles
    direction: Optional[Direction] = None


def default_features() -> dict[str, FeatureConfig]:
    """Weights from the staff survey ("best overall")."""
    return {
        "cta_stations": FeatureConfig(weight=9, radius=1.0),
        "metra_stations": FeatureConfig(weight=8, radius=1.0),
        "amtrak_stations": FeatureConfig(weight=7, radius=1.0),
        "parks": FeatureConfig(weight=6, radius=1.0),
        "public_schools": FeatureConfig(weight=4, radius=1.0),
        "private_schools": FeatureConfig(weight=4, radius=1.0),
        "colleges": FeatureConfig(weight=5, radius=1.0),
        "hospitals": FeatureConfig(weight=4, radius=1.0),
        "landmarks": FeatureConfig(weight=2, radius=1.0),
        "stadiums": FeatureConfig(weight=5, radius=1.0),
        "ssa": FeatureConfig(weight=5, radius=1.0),
        "tif": FeatureConfig(weight=5, radius=1.0),
        "medical_district": FeatureConfig(weight=4, radius=1.0),
        "neighborhood_center": FeatureConfig(weight=5, radius=1.0),
        "bridges": FeatureConfig(weight=9, radius=1.0),
        "adi": FeatureConfig(weight=8, radius=1.0, direction=Direction.HIGHER),
        "crashes": FeatureConfig(weight=5, radius=1.0, direction=Direction.LOWER),
        "transit_density": FeatureConfig(weight=7, radius=0.25, direction=Direction.HIGHER),
        "bike_network": FeatureConfig(weight=5, radius=0.25, direction=Direction.HIGHER),
    }


DEFAULT_FREEWAYS = ["I-90/94", "I-290", "I-55", "I-90/94-Dan-Ryan", "I-57"]


class AnalysisConfig(BaseModel):
    """Complete configuration for one scoring run."""
    segment_length: int = Field(default=300, ge=100, le=1500)  # feet
    selected_freeways: list[str] = Field(default_factory=lambda: list(DEFAULT_FREEWAYS))
    requirements: Requirements = Field(default_factory=Requirements)
    features: dict[str, FeatureConfig] = Field(default_factory=default_features)
    # Accepted for compatibility with saved preferences; no scorer reads it
    individual_radii: bool = False


class AnalysisRequest(BaseModel):
    """Request for a segment scoring run."""
    config: AnalysisConfig = Field(default_factory=AnalysisConfig)
    # Inline GeoJSON FeatureCollections keyed by dataset name; override the catalog
    datasets: Optional[dict[str, dict[str, Any]]] = None


# =============================================================================
# Progress Streaming Models
# =============================================================================


class ProgressEvent(BaseModel):
    """Progress update during an analysis run."""
    type: str = "progress"
    stage: str  # 'segments', 'requirements', 'scoring', 'ranking', 'complete'
    percent: int
    message: str
    current_segment: Optional[str] = None
    segment_center: Optional[list[float]] = None  # [lon, lat]
    sample_features: Optional[list[list[float]]] = None


class GateResultModel(BaseModel):
    """Per-gate exclusion diagnostics."""
    name: str
    enabled: bool
    skipped: bool
    evaluated: int
    excluded: int
    reason: Optional[str] = None


class CompleteEvent(BaseModel):
    """Final ranked result of a run."""
    type: str = "complete"
    segments: list[dict]
    total_segments: int
    analysis_time: int  # epoch milliseconds
    gate_results: list[GateResultModel] = []


class ErrorEvent(BaseModel):
    """Run aborted before completion."""
    type: str = "error"
    message: str
    detail: Optional[str] = None
