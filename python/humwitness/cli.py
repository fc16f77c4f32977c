"""Command-line interface for humwitness."""
import argparse
import json
import sys
from pathlib import Path
from typing import List

from .audio import FingerprintExtractor
from .compare import FingerprintComparator
from .confidence import ConfidenceAggregator, TamperAnalyzer
from .config import HumWitnessConfig, configure_logging, load_config
from .crypto import Ed25519Crypto
from .errors import AudioTooShortError, InsufficientReportsError
from .types import Fingerprint, PeerReport


def _load_settings(args) -> HumWitnessConfig:
    config = load_config(getattr(args, "config", None))
    if getattr(args, "verbose", False):
        config.logging.level = "DEBUG"
    configure_logging(config.logging)
    return config


def _load_fingerprint(path: Path, extractor: FingerprintExtractor) -> Fingerprint:
    if path.suffix.lower() == ".json":
        return Fingerprint.from_dict(json.loads(path.read_text()))
    return extractor.extract_wav(path.read_bytes())


def _require_file(path_str: str) -> Path:
    path = Path(path_str)
    if not path.exists():
        print(f"Error: File not found: {path_str}", file=sys.stderr)
        sys.exit(1)
    return path


def _load_reports(path: Path) -> List[PeerReport]:
    try:
        data = json.loads(path.read_text())
        if isinstance(data, dict):
            data = data.get("reports", [])
        return [PeerReport.from_dict(item) for item in data]
    except KeyError as e:
        print(f"Error: Invalid reports file {path}: missing field {e}", file=sys.stderr)
    except (TypeError, ValueError, AttributeError) as e:
        print(f"Error: Invalid reports file {path}: {e}", file=sys.stderr)
    sys.exit(1)


def extract_command(args):
    """Extract a mains-hum fingerprint from a WAV file."""
    config = _load_settings(args)
    path = _require_file(args.file)
    extractor = FingerprintExtractor(config.fingerprint)

    try:
        fingerprint = extractor.extract_wav(path.read_bytes())
    except AudioTooShortError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(json.dumps(fingerprint.to_dict(), indent=2))

    if args.json:
        print(json.dumps(fingerprint.to_dict(), indent=2))
    else:
        print(f"\n{'='*60}")
        print("  Mains-Hum Fingerprint")
        print(f"{'='*60}\n")
        print(f"File: {path.resolve()}")
        print(f"Hash: {fingerprint.hash}")
        print(f"Mains frequency: {fingerprint.mains_frequency} Hz")
        print(f"Frames: {len(fingerprint.vector)}")
        print(f"Duration: {fingerprint.duration:.2f}s")
        print(f"Extraction quality: {fingerprint.extraction_quality:.2f}")
        if args.output:
            print(f"\nFingerprint saved to: {Path(args.output).resolve()}")
        print(f"\n{'='*60}\n")


def compare_command(args):
    """Compare two recordings (WAV files or fingerprint JSON)."""
    config = _load_settings(args)
    extractor = FingerprintExtractor(config.fingerprint)

    try:
        a = _load_fingerprint(_require_file(args.first), extractor)
        b = _load_fingerprint(_require_file(args.second), extractor)
    except AudioTooShortError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    result = FingerprintComparator().compare(a, b)

    if args.json:
        print(json.dumps({
            "similarity": result.similarity,
            "correlation": result.correlation,
            "confidence": result.confidence.value,
            "timeOffset": result.time_offset,
            "proximityEstimate": result.proximity_estimate.value,
        }, indent=2))
    else:
        print(f"Similarity: {result.similarity:.3f}")
        print(f"Correlation: {result.correlation:.3f}")
        print(f"Confidence: {result.confidence.value}")
        print(f"Time offset: {result.time_offset:+.3f}s")
        print(f"Proximity: {result.proximity_estimate.value}")


def aggregate_command(args):
    """Aggregate a JSON file of signed peer reports."""
    config = _load_settings(args)
    reports = _load_reports(_require_file(args.file))

    aggregator = ConfidenceAggregator(Ed25519Crypto(), config.aggregation)
    try:
        aggregation = aggregator.aggregate(
            reports,
            outlier_threshold=args.threshold,
            min_peers=args.min_peers,
            verify_signatures=False if args.no_verify else None,
        )
    except InsufficientReportsError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    analyzer = TamperAnalyzer()
    analysis = analyzer.analyze_tampering(aggregation)

    if args.json:
        print(json.dumps({
            "aggregation": aggregation.to_dict(),
            "riskLevel": analysis.risk_level.value,
            "tamperingLikely": analysis.tampering_likely,
            "indicators": analysis.indicators,
        }, indent=2))
    else:
        print(analyzer.generate_report(aggregation))

    sys.exit(1 if analysis.tampering_likely else 0)


def keys_command(args):
    """Generate keys command."""
    if args.generate:
        print("Generating Ed25519 key pair...")

        crypto = Ed25519Crypto()
        public_key, private_key = crypto.generate_signing_key_pair()

        output_dir = Path(args.output)
        output_dir.mkdir(parents=True, exist_ok=True)

        private_path = output_dir / "private.pem"
        public_path = output_dir / "public.pem"

        private_path.write_text(Ed25519Crypto.private_key_to_pem(private_key))
        public_path.write_text(Ed25519Crypto.public_key_to_pem(public_key))

        print(f"\nKey pair generated successfully!\n")
        print(f"Private key: {private_path}")
        print(f"Public key: {public_path}")
        print("\nImportant: Keep your private key secure and never share it!")
    else:
        print("humwitness - Key Management\n")
        print("Generate a new key pair:")
        print("  humwitness keys --generate\n")
        print("Options:")
        print("  -g, --generate    Generate new key pair")
        print("  -o, --output      Output directory (default: ./keys)\n")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="humwitness",
        description="Mains-hum fingerprints and peer-verified recording authenticity"
    )
    parser.add_argument("-c", "--config", help="Path to YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Extract command
    extract_parser = subparsers.add_parser("extract", help="Fingerprint a WAV recording")
    extract_parser.add_argument("file", help="WAV file")
    extract_parser.add_argument("-o", "--output", help="Write fingerprint JSON here")
    extract_parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    extract_parser.set_defaults(func=extract_command)

    # Compare command
    compare_parser = subparsers.add_parser("compare", help="Compare two recordings")
    compare_parser.add_argument("first", help="WAV file or fingerprint JSON")
    compare_parser.add_argument("second", help="WAV file or fingerprint JSON")
    compare_parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    compare_parser.set_defaults(func=compare_command)

    # Aggregate command
    aggregate_parser = subparsers.add_parser("aggregate", help="Aggregate signed peer reports")
    aggregate_parser.add_argument("file", help="JSON list of peer reports")
    aggregate_parser.add_argument("-n", "--min-peers", type=int, help="Minimum number of reports")
    aggregate_parser.add_argument("-t", "--threshold", type=float, help="Outlier z-score threshold")
    aggregate_parser.add_argument("--no-verify", action="store_true", help="Skip signature checks")
    aggregate_parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    aggregate_parser.set_defaults(func=aggregate_command)

    # Keys command
    keys_parser = subparsers.add_parser("keys", help="Manage cryptographic keys")
    keys_parser.add_argument("-g", "--generate", action="store_true", help="Generate new key pair")
    keys_parser.add_argument("-o", "--output", default="./keys", help="Output directory")
    keys_parser.set_defaults(func=keys_command)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
