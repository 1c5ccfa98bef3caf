"""
Quality Inspector Module

Entry point used by the surrounding application: selects a matching
strategy per call, owns the Kalman registry shared across calls, and
guarantees a structured InspectionResult even on unexpected failures.

Strategy resolution order:
    1. ``strategy`` argument of inspect()
    2. ``template.metadata["match_strategy"]``
    3. ``inspection.strategy`` from the configuration (default "topology")

Usage:
    from partmatch.inspector import get_inspector

    inspector = get_inspector()            # configured from config.yaml
    result = inspector.inspect(template, detections)
    print(result.message)
"""

import logging
import time
from typing import Any, Dict, Optional, Sequence, Union

import yaml

from partmatch.kalman import KalmanFilterManager
from partmatch.matching.affine_matcher import IterativeAffineMatcher
from partmatch.matching.fingerprint_matcher import CrossRatioMatcher
from partmatch.matching.graph_matcher import TopologyMatcher
from partmatch.matching.interfaces import Matcher
from partmatch.matching.results import failure_result
from partmatch.models import DetectedObject, InspectionResult, MatchStrategy, Template

logger = logging.getLogger(__name__)


class QualityInspector:
    """
    Runs one of the interchangeable matchers against a template.

    Matchers are stateless apart from the Kalman registry, so a single
    inspector can serve concurrent calls.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Args:
            config: Full configuration dict with optional "inspection",
                    "matching" and "kalman" sections (same layout as
                    config.yaml). Missing sections use defaults.
        """
        config = config or {}
        inspection = config.get("inspection", {}) or {}
        matching = config.get("matching", {}) or {}

        self.default_strategy = MatchStrategy.parse(inspection.get("strategy", "topology"))
        treat_extra = inspection.get("treat_extra_as_error", True)

        def section(name: str) -> Dict[str, Any]:
            merged = dict(matching.get(name, {}) or {})
            merged.setdefault("treat_extra_as_error", treat_extra)
            return merged

        self.smoother = KalmanFilterManager.from_config(config.get("kalman", {}) or {})
        self.matchers: Dict[MatchStrategy, Matcher] = {
            MatchStrategy.TOPOLOGY: TopologyMatcher(section("topology")),
            MatchStrategy.CROSS_RATIO: CrossRatioMatcher(section("cross_ratio"), self.smoother),
            MatchStrategy.ITERATIVE_AFFINE: IterativeAffineMatcher(section("iterative_affine")),
        }

        logger.info(f"QualityInspector initialized (default strategy: {self.default_strategy.value})")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def inspect(
        self,
        template: Template,
        detections: Sequence[DetectedObject],
        strategy: Optional[Union[str, MatchStrategy]] = None,
    ) -> InspectionResult:
        """
        Compare detections against a template with the resolved strategy.

        Never raises: unknown strategies and unexpected errors produce a
        failed result whose details carry the error.
        """
        started = time.perf_counter()
        try:
            chosen = self.resolve_strategy(template, strategy)
            matcher = self.matchers[chosen]
            logger.info(
                f"Inspecting template {template.template_id} with {chosen.value} "
                f"({len(detections)} detections)"
            )
            return matcher.match(template, detections)
        except Exception as e:
            logger.warning(f"Inspection failed: {e}")
            if strategy is None:
                name = self.default_strategy.value
            else:
                name = strategy.value if isinstance(strategy, MatchStrategy) else str(strategy)
            return failure_result(
                template, detections, name, f"inspection failed: {e}", started,
            )

    def resolve_strategy(
        self, template: Template, strategy: Optional[Union[str, MatchStrategy]] = None
    ) -> MatchStrategy:
        if strategy is not None:
            return MatchStrategy.parse(strategy)
        from_template = (template.metadata or {}).get("match_strategy")
        if from_template:
            return MatchStrategy.parse(from_template)
        return self.default_strategy

    def get_matcher(self, strategy: Union[str, MatchStrategy]) -> Matcher:
        return self.matchers[MatchStrategy.parse(strategy)]

    def reset_tracking(self) -> None:
        """Drop every temporal filter (e.g. when a new part enters the station)."""
        self.smoother.clear()


def get_inspector(config: Optional[Dict[str, Any]] = None) -> QualityInspector:
    """
    Factory function to get a QualityInspector with config.

    Args:
        config: Optional full config dict. If None, loads from config.yaml;
                falls back to defaults when no config file can be read.

    Returns:
        Configured QualityInspector instance.
    """
    if config is None:
        try:
            from partmatch.config import get_config
            config = get_config()
        except (FileNotFoundError, yaml.YAMLError) as e:
            logger.warning(f"Could not load config.yaml ({e}); using defaults")
            config = {}

    return QualityInspector(config)
