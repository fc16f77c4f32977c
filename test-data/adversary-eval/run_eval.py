"""Evaluate confidence aggregation against colluding and faulty peers."""
import os
import sys

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), '../../python'))

from humwitness.confidence import ConfidenceAggregator, TamperAnalyzer
from humwitness.crypto import Ed25519Crypto, EphemeralIdentity
from humwitness.messages import build_signed_report

crypto = Ed25519Crypto()
aggregator = ConfidenceAggregator(crypto)
analyzer = TamperAnalyzer()
rng = np.random.default_rng(2026)
TRIALS = 50

print("=" * 78)
print("ADVERSARY EVALUATION - Confidence Aggregation")
print("=" * 78)


def reports(scores):
    out = []
    for score in scores:
        peer = EphemeralIdentity.generate(crypto)
        out.append(build_signed_report(peer, crypto, "urn:uuid:eval", float(score)))
    return out


def run(label, honest_mean, honest, adversarial_score, adversaries, expect_accept):
    correct = 0
    scores = []
    for _ in range(TRIALS):
        honest_scores = np.clip(rng.normal(honest_mean, 0.03, honest), 0, 1)
        batch = reports([*honest_scores, *[adversarial_score] * adversaries])
        aggregation = aggregator.aggregate(batch, min_peers=1)
        analysis = analyzer.analyze_tampering(aggregation)
        scores.append(aggregation.aggregated_score)
        accepted = not analysis.tampering_likely and aggregation.aggregated_score >= 0.7
        if accepted == expect_accept:
            correct += 1
    status = "PASS" if correct == TRIALS else "FAIL"
    print(f"  [{status}] {label:44s} {correct:3d}/{TRIALS}  "
          f"score min={min(scores):.2f} avg={np.mean(scores):.2f} max={max(scores):.2f}")
    return correct


# --- Authentic recordings ---
print("\n" + "-" * 78)
print("AUTHENTIC RECORDING  [Expected: accepted]")
print("-" * 78)
total = 0
total += run("5 honest witnesses", 0.92, 5, 0.0, 0, True)
total += run("5 honest, 1 peer denying", 0.92, 5, 0.0, 1, True)
total += run("8 honest, 2 peers denying", 0.92, 8, 0.0, 2, True)

# --- Fabricated recordings ---
print("\n" + "-" * 78)
print("FABRICATED RECORDING  [Expected: rejected]")
print("-" * 78)
total += run("4 honest peers, nobody recorded", 0.02, 4, 0.0, 0, False)
total += run("5 honest, 1 colluder vouching", 0.03, 5, 1.0, 1, False)
total += run("4 honest, 2 colluders vouching", 0.03, 4, 1.0, 2, False)

# --- Summary ---
print("\n" + "=" * 78)
print("SUMMARY")
print("=" * 78)
print(f"  Correct decisions: {total}/{6 * TRIALS} ({100 * total / (6 * TRIALS):.1f}%)")
print("\n" + "=" * 78)
