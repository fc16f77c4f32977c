"""Fingerprint comparison: alignment, similarity and proximity."""

import logging
from typing import Optional, Tuple

import numpy as np

from .types import (
    ConfidenceLevel,
    Fingerprint,
    FingerprintComparison,
    ProximityEstimate,
)

logger = logging.getLogger(__name__)


class FingerprintComparator:
    """Scores the similarity of two mains-hum fingerprints.

    Correlation is the Pearson coefficient over the overlapping part of the
    two vectors at each candidate offset, searched over +/- half the shorter
    vector's length. Cosine similarity is then taken at the best offset.
    """

    MAINS_MISMATCH_HZ = 5.0

    # (min similarity, max |frame offset|, estimate)
    PROXIMITY_RULES = (
        (0.85, 10, ProximityEstimate.SAME_LOCATION),
        (0.6, 50, ProximityEstimate.NEARBY),
        (0.3, None, ProximityEstimate.DISTANT),
    )

    def compare(self, a: Fingerprint, b: Fingerprint) -> FingerprintComparison:
        """Compare two fingerprints.

        Offsets are expressed as "b lags a by ``frame_offset`` frames";
        ``compare(b, a)`` reports the negated offset. Similarity is not
        guaranteed to be exactly symmetric when vector lengths differ.
        """
        if abs(a.mains_frequency - b.mains_frequency) > self.MAINS_MISMATCH_HZ:
            logger.debug(
                f"Mains mismatch {a.mains_frequency} Hz vs {b.mains_frequency} Hz"
            )
            return FingerprintComparison(
                similarity=0.0,
                correlation=0.0,
                confidence=ConfidenceLevel.LOW,
                time_offset=0.0,
                proximity_estimate=ProximityEstimate.DISTANT,
            )

        va = np.asarray(a.vector, dtype=np.float64)
        vb = np.asarray(b.vector, dtype=np.float64)

        correlation, offset = self.cross_correlate(va, vb)
        aligned = self.align(vb, offset)
        cosine = self.cosine_similarity(va, aligned)

        similarity = float(np.clip((correlation + cosine) / 2, 0.0, 1.0))
        confidence = self.determine_confidence(
            similarity, a.extraction_quality, b.extraction_quality
        )

        return FingerprintComparison(
            similarity=similarity,
            correlation=correlation,
            confidence=confidence,
            time_offset=offset * a.frame_duration,
            proximity_estimate=self.estimate_proximity(similarity, abs(offset)),
            frame_offset=offset,
        )

    @staticmethod
    def _offset_order(max_offset: int):
        """0, -1, 1, -2, 2, ... so ties resolve to the smallest shift."""
        yield 0
        for k in range(1, max_offset + 1):
            yield -k
            yield k

    @staticmethod
    def _pearson(x: np.ndarray, y: np.ndarray) -> float:
        if len(x) < 2:
            return 0.0
        x = x - x.mean()
        y = y - y.mean()
        denom = np.sqrt(np.dot(x, x) * np.dot(y, y))
        if denom <= 0:
            return 0.0
        return float(np.clip(np.dot(x, y) / denom, -1.0, 1.0))

    def cross_correlate(self, va: np.ndarray, vb: np.ndarray) -> Tuple[float, int]:
        """Best correlation and the offset ``j - i`` at which it occurs."""
        min_length = min(len(va), len(vb))
        max_offset = min_length // 2

        best_correlation = -np.inf
        best_offset = 0
        for offset in self._offset_order(max_offset):
            lo = max(0, -offset)
            hi = min(min_length, len(vb) - offset)
            if hi - lo < 2:
                continue
            corr = self._pearson(va[lo:hi], vb[lo + offset:hi + offset])
            if corr > best_correlation:
                best_correlation = corr
                best_offset = offset

        if not np.isfinite(best_correlation):
            return 0.0, 0
        return float(best_correlation), best_offset

    @staticmethod
    def align(vector: np.ndarray, offset: int) -> np.ndarray:
        """Shift ``vector`` left by ``offset``, zero-filling the gap."""
        aligned = np.zeros_like(vector)
        n = len(vector)
        if offset >= 0:
            aligned[:n - offset] = vector[offset:]
        else:
            aligned[-offset:] = vector[:n + offset]
        return aligned

    @staticmethod
    def cosine_similarity(va: np.ndarray, vb: np.ndarray) -> float:
        n = min(len(va), len(vb))
        x, y = va[:n], vb[:n]
        magnitude = np.sqrt(np.dot(x, x) * np.dot(y, y))
        return float(np.dot(x, y) / magnitude) if magnitude > 0 else 0.0

    @staticmethod
    def determine_confidence(similarity: float, quality_a: float,
                             quality_b: float) -> ConfidenceLevel:
        score = similarity * (quality_a + quality_b) / 2
        if score >= 0.7:
            return ConfidenceLevel.HIGH
        if score >= 0.4:
            return ConfidenceLevel.MEDIUM
        return ConfidenceLevel.LOW

    def estimate_proximity(self, similarity: float,
                           offset_frames: int) -> ProximityEstimate:
        for min_similarity, max_offset, estimate in self.PROXIMITY_RULES:
            if similarity >= min_similarity and (max_offset is None or offset_frames < max_offset):
                return estimate
        return ProximityEstimate.UNKNOWN


def compare(a: Fingerprint, b: Fingerprint,
            comparator: Optional[FingerprintComparator] = None) -> FingerprintComparison:
    """Module-level convenience wrapper."""
    return (comparator or FingerprintComparator()).compare(a, b)
