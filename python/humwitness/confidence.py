"""
Confidence aggregation and tamper analysis.

Turns a set of signed peer reports into one robust score:
  1. Verify each report's signature against its ephemeral key
  2. Reject outliers with a leave-one-out z-score
  3. Trimmed mean of the remaining scores
  4. Consensus bucket from the coefficient of variation
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .config import AggregationConfig
from .crypto import CryptoProvider
from .errors import InsufficientReportsError, InvalidSignatureError
from .messages import check_report_signature
from .types import (
    ConfidenceAggregation,
    ConfidenceLevel,
    PeerReport,
    PeerScore,
    ProximityLevel,
    RiskLevel,
    TamperAnalysis,
)

logger = logging.getLogger(__name__)


class PeerReportValidator:
    """Structural checks run on reports before they are aggregated."""

    def validate_report(self, report: PeerReport) -> Tuple[bool, List[str]]:
        """Check one report.

        Returns:
            (valid, errors) where errors lists every problem found
        """
        errors = []
        if not report.id:
            errors.append("Missing report ID")
        if not report.media_item_id:
            errors.append("Missing media item ID")
        if not report.peer_ephemeral_id:
            errors.append("Missing peer ephemeral ID")
        if not report.signature:
            errors.append("Missing signature")
        if not report.ephemeral_pub_key:
            errors.append("Missing public key")
        if not report.timestamp:
            errors.append("Missing timestamp")
        if not 0.0 <= report.confidence_score <= 1.0:
            errors.append(f"Invalid confidence score: {report.confidence_score} (must be [0, 1])")
        if not isinstance(report.proximity_level, ProximityLevel):
            errors.append(f"Invalid proximity level: {report.proximity_level}")
        return len(errors) == 0, errors

    def validate_reports(self, reports: Sequence[PeerReport]) -> List[PeerReport]:
        """Keep the reports that pass ``validate_report``."""
        valid = []
        for report in reports:
            ok, errors = self.validate_report(report)
            if ok:
                valid.append(report)
            else:
                logger.warning(f"Invalid report from {report.peer_ephemeral_id}: {'; '.join(errors)}")
        logger.debug(f"{len(valid)}/{len(reports)} reports passed validation")
        return valid


class ConfidenceAggregator:
    """
    Aggregates peer reports into a confidence score resistant to
    malicious or faulty peers.

    Outliers are found leave-one-out: each score is compared with the
    mean and standard deviation of the *other* scores, with the deviation
    floored at ``deviation_floor``. Detection is skipped below
    ``min_outlier_population`` reports or when all scores are equal.
    """

    def __init__(self, crypto: CryptoProvider, config: Optional[AggregationConfig] = None):
        self.crypto = crypto
        self.config = config or AggregationConfig()

    def aggregate(
        self,
        reports: Sequence[PeerReport],
        outlier_threshold: Optional[float] = None,
        min_peers: Optional[int] = None,
        verify_signatures: Optional[bool] = None,
    ) -> ConfidenceAggregation:
        """
        Aggregate peer reports into a confidence score.

        Args:
            reports: Peer-signed reports
            outlier_threshold: z-score above which a report is an outlier
            min_peers: Minimum number of reports required
            verify_signatures: Drop reports whose signature does not verify

        Returns:
            ConfidenceAggregation

        Raises:
            InsufficientReportsError: Fewer than ``min_peers`` reports given
                (counted before signature and score filtering)
        """
        threshold = self.config.outlier_threshold if outlier_threshold is None else outlier_threshold
        min_peers = self.config.min_peers if min_peers is None else min_peers
        if verify_signatures is None:
            verify_signatures = self.config.verify_signatures

        logger.info(f"Aggregating {len(reports)} peer reports")
        if len(reports) < min_peers:
            raise InsufficientReportsError(len(reports), min_peers)

        reports = list(reports)
        if verify_signatures:
            reports = self.verify_report_signatures(reports)
        reports = self.drop_invalid_scores(reports)

        scores = np.array([r.confidence_score for r in reports], dtype=np.float64)
        std_dev = float(np.std(scores)) if scores.size else 0.0

        outliers = self.detect_outliers(scores, threshold)
        kept = scores[~outliers]

        aggregated = float(np.clip(np.mean(kept), 0.0, 1.0)) if kept.size else 0.0
        consensus = self.assess_consensus(kept, aggregated)

        peer_scores = [
            PeerScore(peer_id=r.peer_ephemeral_id, score=r.confidence_score, included=not bool(out))
            for r, out in zip(reports, outliers)
        ]

        result = ConfidenceAggregation(
            aggregated_score=aggregated,
            report_count=int(kept.size),
            outlier_count=int(outliers.sum()),
            standard_deviation=std_dev,
            consensus_level=consensus,
            peer_scores=peer_scores,
        )
        logger.info(f"Aggregated score: {aggregated:.3f} ({consensus.value} consensus)")
        return result

    def verify_report_signatures(self, reports: Sequence[PeerReport]) -> List[PeerReport]:
        valid = []
        for report in reports:
            try:
                check_report_signature(report, self.crypto)
            except InvalidSignatureError as e:
                logger.warning(f"Dropping report {report.id}: {e}")
                continue
            valid.append(report)
        logger.info(f"{len(valid)}/{len(reports)} reports have valid signatures")
        return valid

    @staticmethod
    def drop_invalid_scores(reports: Sequence[PeerReport]) -> List[PeerReport]:
        """Keep reports whose score is a finite number in [0, 1]."""
        valid = []
        for report in reports:
            score = report.confidence_score
            if not np.isfinite(score) or not 0.0 <= score <= 1.0:
                logger.warning(f"Dropping report {report.id}: confidence score {score} outside [0, 1]")
                continue
            valid.append(report)
        return valid

    def detect_outliers(self, scores: np.ndarray, threshold: float) -> np.ndarray:
        """Boolean mask of outlier scores."""
        mask = np.zeros(len(scores), dtype=bool)
        if len(scores) < self.config.min_outlier_population or np.std(scores) == 0:
            return mask

        for i in range(len(scores)):
            others = np.delete(scores, i)
            spread = max(float(np.std(others)), self.config.deviation_floor)
            mask[i] = abs(scores[i] - others.mean()) / spread > threshold

        if mask.all():
            # No majority to measure against
            logger.warning("Every report looks like an outlier, keeping all of them")
            return np.zeros(len(scores), dtype=bool)
        return mask

    @staticmethod
    def assess_consensus(scores: np.ndarray, aggregated_score: float) -> ConfidenceLevel:
        if len(scores) == 0:
            return ConfidenceLevel.LOW
        mean = float(np.mean(scores))
        cv = float(np.std(scores)) / mean if mean > 0 else 1.0

        if cv < 0.1 and aggregated_score >= 0.7:
            return ConfidenceLevel.HIGH
        if cv < 0.3 and aggregated_score >= 0.5:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.LOW


class TamperAnalyzer:
    """Flags aggregation patterns that suggest tampering."""

    def analyze_tampering(self, aggregation: ConfidenceAggregation) -> TamperAnalysis:
        indicators = []

        if aggregation.aggregated_score < 0.3:
            indicators.append("Very low confidence score")

        if aggregation.consensus_level == ConfidenceLevel.LOW:
            indicators.append("Low peer consensus")

        total = aggregation.report_count + aggregation.outlier_count
        outlier_ratio = aggregation.outlier_count / total if total else 0.0
        if outlier_ratio > 0.3:
            indicators.append(f"High outlier ratio: {outlier_ratio * 100:.1f}%")

        if aggregation.standard_deviation > 0.3:
            indicators.append("High variance in peer scores")

        if not indicators:
            risk = RiskLevel.LOW
        elif len(indicators) <= 2:
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.HIGH

        return TamperAnalysis(
            risk_level=risk,
            indicators=indicators,
            tampering_likely=len(indicators) >= 2,
        )

    def generate_report(self, aggregation: ConfidenceAggregation) -> str:
        """Human-readable tamper detection summary."""
        analysis = self.analyze_tampering(aggregation)

        lines = [
            "=== Tamper Detection Report ===",
            "",
            f"Aggregated Confidence: {aggregation.aggregated_score * 100:.1f}%",
            f"Consensus Level: {aggregation.consensus_level.value}",
            f"Peer Reports: {aggregation.report_count} "
            f"({aggregation.outlier_count} outliers excluded)",
            f"Standard Deviation: {aggregation.standard_deviation:.3f}",
            "",
            f"Risk Level: {analysis.risk_level.value.upper()}",
            f"Tampering Likely: {'YES' if analysis.tampering_likely else 'NO'}",
            "",
            "Indicators:",
        ]
        lines.extend(f"  - {i}" for i in analysis.indicators)
        if not analysis.indicators:
            lines.append("  (none)")

        lines += ["", "Peer Scores:"]
        for ps in aggregation.peer_scores:
            mark = "included" if ps.included else "excluded (outlier)"
            lines.append(f"  {ps.peer_id}: {ps.score * 100:.1f}% {mark}")

        lines += ["", "=== End Report ==="]
        return "\n".join(lines)
