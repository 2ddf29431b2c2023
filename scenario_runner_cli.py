import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from pydantic import ValidationError

from scenario_runner import (
    RunConfig,
    RunResult,
    Scenario,
    ScenarioLoadError,
    ScenarioRunner,
    load_scenario,
    logger,
)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_LOAD_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an HTTP test scenario against a base URL")
    parser.add_argument("scenario_file", help="Path to the scenario file (JSON array of steps, or YAML)")
    parser.add_argument("base_url", help="Base URL every step URL is appended to")
    parser.add_argument(
        "--report",
        dest="report_dir",
        default=None,
        help="Directory for evidence files and summary.csv (default: reports/<epoch ms>)",
    )
    parser.add_argument(
        "--fuzz",
        dest="fuzz_count",
        type=int,
        default=0,
        help="Extra mutated iterations for each step marked fuzz",
    )
    parser.add_argument(
        "--seed",
        dest="fuzz_seed",
        type=int,
        default=None,
        help="Seed for fuzz tokens, for reproducible runs",
    )
    parser.add_argument(
        "--timeout",
        dest="timeout_s",
        type=float,
        default=None,
        help="Total timeout in seconds for each HTTP exchange",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Do not verify TLS certificates",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING)",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        base_url=args.base_url,
        fuzz_count=max(args.fuzz_count, 0),
        fuzz_seed=args.fuzz_seed,
        verify_ssl=not args.insecure,
        debug=args.log_level.upper() == "DEBUG",
        **{
            k: v
            for k, v in {
                "report_dir": args.report_dir,
                "request_timeout_s": args.timeout_s,
            }.items()
            if v is not None
        },
    )


async def run_scenario(cfg: RunConfig, scenario: Scenario) -> RunResult:
    runner = ScenarioRunner(cfg)
    return await runner.run(scenario)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    try:
        cfg = build_config(args)
    except ValidationError as e:
        logger.critical(f"Invalid run configuration: {e}")
        return EXIT_LOAD_ERROR

    try:
        scenario = load_scenario(args.scenario_file)
    except ScenarioLoadError as e:
        logger.critical(str(e))
        return EXIT_LOAD_ERROR

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(run_scenario(cfg, scenario))
    except KeyboardInterrupt:
        print("Stopping scenario run...")
        return EXIT_FAILURES
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    return EXIT_OK if result.all_passed else EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
