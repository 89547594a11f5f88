"""Threat detection: analyzers, risk aggregation and threat classification."""

from warden.detection.aggregator import AggregatorConfig, RiskAggregator, create_risk_aggregator
from warden.detection.classifier import (
    DEFAULT_BANDS,
    ThreatClassifier,
    ThresholdBand,
    ThresholdBands,
    create_threat_classifier,
)
from warden.detection.protocol import Analyzer, AnalyzerOutput, applies_to, normalize_output
from warden.detection.scoring import MAX_SCORE, ScoringConfig, combine_scores
from warden.detection.types import (
    ANALYZER_UNAVAILABLE,
    Event,
    EventKind,
    RiskFactor,
    Severity,
    ThreatAssessment,
    ThreatLevel,
)

__all__ = [
    # Types
    "Event",
    "EventKind",
    "RiskFactor",
    "Severity",
    "ThreatAssessment",
    "ThreatLevel",
    "ANALYZER_UNAVAILABLE",
    # Protocol
    "Analyzer",
    "AnalyzerOutput",
    "applies_to",
    "normalize_output",
    # Scoring
    "MAX_SCORE",
    "ScoringConfig",
    "combine_scores",
    # Classification
    "ThresholdBand",
    "ThresholdBands",
    "DEFAULT_BANDS",
    "ThreatClassifier",
    "create_threat_classifier",
    # Aggregation
    "AggregatorConfig",
    "RiskAggregator",
    "create_risk_aggregator",
]
