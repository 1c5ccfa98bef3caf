"""
Core Module for the Part Inspection Matching Engine

This package compares a template of expected feature positions against
per-frame detections and classifies every feature as passed, deviated,
missing, suspicious or extra.

Main components:
    - config: Configuration loading and management
    - geometry: Points and affine / rigid transforms
    - models: Templates, detections and inspection results
    - kalman: Per-object temporal smoothing
    - matching: Interchangeable correspondence strategies
    - inspector: Strategy selection and the public entry point

Usage:
    from partmatch import get_inspector, Template, TemplateFeature, DetectedObject, Point
"""

from partmatch.config import (
    get_config,
    get_section,
    get_inspection_config,
    get_matching_config,
    get_topology_config,
    get_cross_ratio_config,
    get_iterative_affine_config,
    get_kalman_config,
)

from partmatch.geometry import Point, AffineTransform, RigidTransform

from partmatch.models import (
    ComparisonStatus,
    MatchStrategy,
    TemplateFeature,
    Template,
    DetectedObject,
    FeatureComparison,
    InspectionSummary,
    InspectionResult,
    build_template_from_detections,
)

from partmatch.kalman import KalmanFilter, KalmanFilterManager

from partmatch.inspector import QualityInspector, get_inspector

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_inspection_config",
    "get_matching_config",
    "get_topology_config",
    "get_cross_ratio_config",
    "get_iterative_affine_config",
    "get_kalman_config",
    # Geometry
    "Point",
    "AffineTransform",
    "RigidTransform",
    # Data model
    "ComparisonStatus",
    "MatchStrategy",
    "TemplateFeature",
    "Template",
    "DetectedObject",
    "FeatureComparison",
    "InspectionSummary",
    "InspectionResult",
    "build_template_from_detections",
    # Temporal smoothing
    "KalmanFilter",
    "KalmanFilterManager",
    # Inspection
    "QualityInspector",
    "get_inspector",
]
