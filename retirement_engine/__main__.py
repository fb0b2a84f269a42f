"""Command-line entry point: ``python -m retirement_engine PROFILE.json``."""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from typing import List, Optional

from .errors import ComputeTimeoutError, IncompleteInputError, InvalidParameterError
from .profile import HouseholdProfile, OptimizationOverlay
from .service import SimulationService
from .settings import SETTINGS_FILE, configure_logging, load_settings


EXIT_BAD_INPUT = 2
EXIT_TIMEOUT = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="retirement_engine",
        description="Run a retirement Monte Carlo simulation for a household profile.",
    )
    parser.add_argument("profile", help="Household profile JSON file")
    parser.add_argument("--overlay", help="Optimization overlay JSON file to apply")
    parser.add_argument("--iterations", type=int, help="Number of simulated lives")
    parser.add_argument("--seed", type=int, help="Override the profile's random seed")
    parser.add_argument("--stress", action="store_true", help="Also run the default stress tests")
    parser.add_argument("--claim-ages", action="store_true", help="Also solve Social Security claiming ages")
    parser.add_argument(
        "--retirement-age",
        action="store_true",
        help="Also find the earliest retirement age reaching the configured success threshold",
    )
    parser.add_argument("--settings", default=SETTINGS_FILE, help="Engine settings JSON file")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging verbosity",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args.settings)
        profile = HouseholdProfile.from_json(args.profile)
        if args.seed is not None:
            profile = dataclasses.replace(profile, seed=args.seed)
        overlay = None
        if args.overlay:
            with open(args.overlay) as f:
                overlay = OptimizationOverlay.from_dict(json.load(f))

        with SimulationService(settings) as service:
            output = {"simulation": service.simulate(profile, overlay, args.iterations).to_dict()}
            if args.claim_ages:
                output["claim_ages"] = {
                    owner: r.to_dict()
                    for owner, r in service.optimal_claim_ages(profile, overlay).items()
                }
            if args.retirement_age:
                output["retirement_age"] = service.optimal_retirement_age(
                    profile, overlay, threshold=settings.success_threshold, iterations=args.iterations
                ).to_dict()
            if args.stress:
                output["stress"] = service.stress_test(
                    profile, overlay=overlay, iterations=args.iterations
                ).to_dict()
    except IncompleteInputError as exc:
        print(f"Missing required fields: {', '.join(exc.missing_fields)}", file=sys.stderr)
        return EXIT_BAD_INPUT
    except InvalidParameterError as exc:
        for problem in exc.problems:
            print(f"Invalid input: {problem}", file=sys.stderr)
        return EXIT_BAD_INPUT
    except ComputeTimeoutError as exc:
        print(f"{exc} (retry later)", file=sys.stderr)
        return EXIT_TIMEOUT
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_BAD_INPUT

    json.dump(output, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
