import argparse
from datetime import datetime
import json
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional

import numpy as np
import structlog

from . import config
from .client_heuristics import ClientEnvironment, assess_environment
from .exceptions import InputValidationError, TrustCircleError
from .logging_setup import configure_logging
from .movement import classify_movement
from .pattern_codec import decode_pattern, encode_pattern, encode_to_samples, pattern_to_bits
from .seed_engine import SeedEngine, get_animation_parameters
from .store import InMemoryStore
from .utils import ensure_utc

# Initialize structured logger
logger = structlog.get_logger(__name__)


def _read_text(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source)
    if not path.is_file():
        raise InputValidationError(f"File not found: {source}", field="path")
    return path.read_text(encoding="utf-8")


def _parse_time(value: Optional[str]) -> datetime:
    if value is None:
        return ensure_utc(None)
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError as e:
        raise InputValidationError(f"Invalid timestamp: {value}", field="at") from e


class TrustCircleCLI:
    """Command-line tools for inspecting badges and running the classifiers."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="trustcircle",
            description="TrustCircle - Presence & Optical Identity Verification Engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")

        subparsers = parser.add_subparsers(dest="command", required=True)

        seed_parser = subparsers.add_parser("seed", help="Show a zone's badge seed for a moment.")
        seed_parser.add_argument("--zone", required=True, help="Zone id.")
        seed_parser.add_argument("--at", default=None, help="ISO timestamp (default: now).")

        params_parser = subparsers.add_parser("params", help="Derive animation parameters from a seed.")
        params_parser.add_argument("--seed", required=True, help="Badge seed.")
        params_parser.add_argument("--device", default=None, help="Device token for micro-variation.")

        encode_parser = subparsers.add_parser("encode", help="Encode a device's optical pattern.")
        encode_parser.add_argument("--token", required=True, help="Device token.")
        encode_parser.add_argument("--zone", required=True, help="Zone id.")
        encode_parser.add_argument("--at", default=None, help="ISO timestamp (default: now).")

        decode_parser = subparsers.add_parser("decode", help="Decode a luminance series.")
        source = decode_parser.add_mutually_exclusive_group(required=True)
        source.add_argument("--samples", help="File of luminance values ('-' for stdin).")
        source.add_argument("--simulate", help="24-bit pattern in hex to synthesize.")
        decode_parser.add_argument("--noise", type=float, default=0.0, help="Relative noise for --simulate.")
        decode_parser.add_argument("--seed-rng", type=int, default=None, help="RNG seed for --simulate.")

        classify_parser = subparsers.add_parser("classify", help="Classify an accelerometer burst.")
        classify_parser.add_argument("--samples", required=True, help="CSV of x,y,z rows ('-' for stdin).")

        assess_parser = subparsers.add_parser("assess", help="Assess a client environment snapshot.")
        assess_parser.add_argument("--env", required=True, help="JSON environment file ('-' for stdin).")

        return parser

    # =========================================================================
    # Commands
    # =========================================================================
    def _seed(self, args: argparse.Namespace) -> Dict[str, Any]:
        engine = SeedEngine(InMemoryStore())
        seed = engine.get_or_create_seed(args.zone, _parse_time(args.at))
        result = seed.to_dict()
        result["parameters"] = get_animation_parameters(seed.seed).to_dict()
        return result

    def _params(self, args: argparse.Namespace) -> Dict[str, Any]:
        return get_animation_parameters(args.seed, args.device).to_dict()

    def _encode(self, args: argparse.Namespace) -> Dict[str, Any]:
        engine = SeedEngine(InMemoryStore())
        window = engine.window_index(_parse_time(args.at))
        pattern = encode_pattern(args.token, engine.pattern_secret(args.zone, window))
        return {
            "window": window,
            "pattern": format(pattern, "06x"),
            "bits": "".join(str(bit) for bit in pattern_to_bits(pattern)),
        }

    def _decode(self, args: argparse.Namespace) -> Dict[str, Any]:
        if args.simulate is not None:
            try:
                pattern = int(args.simulate, 16)
            except ValueError as e:
                raise InputValidationError(f"Invalid pattern: {args.simulate}", field="simulate") from e
            samples = encode_to_samples(
                pattern, noise_std=args.noise, rng=np.random.default_rng(args.seed_rng)
            )
        else:
            text = _read_text(args.samples).replace(",", " ")
            try:
                samples = np.array([float(value) for value in text.split()])
            except ValueError as e:
                raise InputValidationError("Samples must be numbers", field="samples") from e

        decoded = decode_pattern(samples)
        if decoded is None:
            return {"decoded": False, "sample_count": int(len(samples))}
        return {
            "decoded": True,
            "pattern": format(decoded.pattern, "06x"),
            "prefix": decoded.prefix_hex,
            "checksum": decoded.checksum,
            "confidence": round(decoded.confidence, 4),
        }

    def _classify(self, args: argparse.Namespace) -> Dict[str, Any]:
        rows = []
        for line in _read_text(args.samples).splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            values = line.replace(",", " ").split()
            if len(values) != 3:
                raise InputValidationError(f"Expected x,y,z row: {line}", field="samples")
            try:
                rows.append(tuple(float(v) for v in values))
            except ValueError as e:
                raise InputValidationError(f"Non-numeric row: {line}", field="samples") from e
        return classify_movement(rows).to_dict()

    def _assess(self, args: argparse.Namespace) -> Dict[str, Any]:
        try:
            data = json.loads(_read_text(args.env))
        except json.JSONDecodeError as e:
            raise InputValidationError(f"Invalid JSON: {e}", field="env") from e
        assessment = assess_environment(ClientEnvironment.from_dict(data))
        return {
            "label": assessment.label,
            "severity": assessment.severity,
            "risk_score": round(assessment.risk_score, 2),
            "flags": assessment.inconsistency_flags,
            "report": assessment.to_report(),
        }

    # =========================================================================
    # Entry
    # =========================================================================
    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        args = self.parser.parse_args(args_list)
        configure_logging(level=args.log_level or config.LOG_LEVEL)

        handlers = {
            "seed": self._seed,
            "params": self._params,
            "encode": self._encode,
            "decode": self._decode,
            "classify": self._classify,
            "assess": self._assess,
        }
        try:
            result = handlers[args.command](args)
        except TrustCircleError as e:
            logger.error("Command failed", command=args.command, **e.to_dict())
            print(f"[ERROR] {e}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130

        print(json.dumps(result, indent=2))
        return 0


def main() -> int:
    """Main entry point for the CLI."""
    cli = TrustCircleCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
