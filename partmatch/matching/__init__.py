"""
Matching Module for Part Inspection

This package contains the correspondence strategies that pair template
features with detected objects, plus the assignment primitive they share.

Components:
    - interfaces: Matcher base class, MatchPair, typed estimation errors
    - assignment: minimum-cost bipartite assignment (Hungarian)
    - topology / graph_matcher: invariant k-NN graph matching
    - cross_ratio / fingerprint_matcher: projective fingerprint matching
    - affine_matcher: three-pass robust similarity estimation

Usage:
    from partmatch.matching import TopologyMatcher, CrossRatioMatcher, IterativeAffineMatcher
"""

from partmatch.matching.interfaces import (
    EstimationResult,
    Matcher,
    MatchError,
    MatchErrorKind,
    MatchPair,
)
from partmatch.matching.assignment import solve_assignment, total_cost
from partmatch.matching.topology import TopologyEdge, TopologyGraph, TopologyNode
from partmatch.matching.graph_matcher import ConsistencyReport, TopologyMatcher
from partmatch.matching.cross_ratio import (
    CrossRatioFingerprint,
    FingerprintCalculator,
    ReferencePoints,
)
from partmatch.matching.fingerprint_matcher import CrossRatioMatcher, FingerprintDatabase
from partmatch.matching.affine_matcher import IterativeAffineMatcher

__all__ = [
    # Interfaces
    "Matcher",
    "MatchPair",
    "MatchError",
    "MatchErrorKind",
    "EstimationResult",
    # Assignment
    "solve_assignment",
    "total_cost",
    # Graph matching
    "TopologyNode",
    "TopologyEdge",
    "TopologyGraph",
    "ConsistencyReport",
    "TopologyMatcher",
    # Fingerprint matching
    "ReferencePoints",
    "CrossRatioFingerprint",
    "FingerprintCalculator",
    "FingerprintDatabase",
    "CrossRatioMatcher",
    # Affine matching
    "IterativeAffineMatcher",
]
