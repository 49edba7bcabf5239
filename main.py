#!/usr/bin/env python3
"""
PlanConsensus - multi-provider consensus for construction plan takeoff

Sends one normalized plan input to every configured provider, reconciles
their takeoffs and writes the reconciled result, the consensus report and a
provider recommendation as JSON.

Usage:
    python main.py input.json --system-prompt prompt.txt [--task takeoff]
    python main.py input.json --system-prompt prompt.txt --replay recordings/
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
load_dotenv()

from core.logging_config import configure_logging

# Logging is configured in main() after arg parsing.
logger = logging.getLogger(__name__)

from core.constants import SYSTEM_NAME, SYSTEM_VERSION, TASK_TYPES
from core.engine_config import load_engine_config
from core.errors import ConfigurationError, InsufficientProviders
from consensus.orchestrator import orchestrate
from consensus.recommendation import PerformanceModel
from consensus.schema import NormalizedInput
from providers import build_providers


def _read_json(path: str, what: str):
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except FileNotFoundError:
        logger.error(f"{what} not found: {path}")
    except json.JSONDecodeError as e:
        logger.error(f"{what} is not valid JSON ({path}): {e}")
    sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description=f"{SYSTEM_NAME} {SYSTEM_VERSION} - cross-check plan takeoffs across providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py plan.json --system-prompt prompt.txt
    python main.py plan.json --system-prompt prompt.txt --task quality -o quality.json
    python main.py plan.json --system-prompt prompt.txt --replay recordings/ --performance-model perf.json
        """,
    )
    parser.add_argument("input", help="Normalized plan input (JSON)")
    parser.add_argument("--system-prompt", "-s", required=True, metavar="PATH",
                        help="File holding the system prompt sent to every provider")
    parser.add_argument("--task", "-t", default="takeoff", choices=TASK_TYPES,
                        help="Task type (default: takeoff)")
    parser.add_argument("--config", "-c", metavar="PATH",
                        help="Engine config file (default: consensus_config.yaml search)")
    parser.add_argument("--output", "-o", metavar="PATH",
                        help="Result JSON (default: <input>_consensus.json)")
    parser.add_argument("--replay", metavar="DIR",
                        help="Replay recorded provider replies from DIR instead of calling vendors")
    parser.add_argument("--performance-model", metavar="PATH",
                        help="Provider history file; read before and updated after the run")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")

    log_group = parser.add_argument_group('Logging')
    log_group.add_argument("--json-log", action="store_true", help="Emit structured JSON log lines to stderr")
    log_group.add_argument("--log-file", type=str, metavar="PATH", help="Write JSON logs to file")

    args = parser.parse_args()

    configure_logging(
        json_mode=args.json_log,
        log_file=args.log_file,
        level=logging.DEBUG if args.verbose else logging.INFO,
    )

    inputs = NormalizedInput.from_dict(_read_json(args.input, "Input file"))
    try:
        system_prompt = Path(args.system_prompt).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.error(f"System prompt not found: {args.system_prompt}")
        sys.exit(1)

    try:
        config = load_engine_config(args.config)
        providers = build_providers(config.providers, replay_dir=args.replay)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    model = PerformanceModel.load(Path(args.performance_model)) if args.performance_model else None

    logger.info("=" * 60)
    logger.info(f"{SYSTEM_NAME} {SYSTEM_VERSION}")
    logger.info(f"Input: {args.input} ({len(inputs.chunks)} chunks, {len(inputs.sheet_index)} sheets)")
    logger.info(f"Task: {args.task}")
    logger.info("=" * 60)

    try:
        result = orchestrate(inputs, system_prompt, args.task, providers, config, model)
    except InsufficientProviders as e:
        logger.error(f"{e}")
        for failure in e.failures:
            logger.error(f"  {failure.provider_id}: {failure.error_type}: {failure.message}")
        sys.exit(1)

    output = Path(args.output) if args.output else Path(args.input).with_name(
        f"{Path(args.input).stem}_consensus.json"
    )
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, 'w', encoding='utf-8') as f:
        json.dump(result.to_dict(), f, indent=2)
    logger.info(f"Wrote {output}")

    if args.performance_model:
        result.performance_model.save(Path(args.performance_model))
        logger.info(f"Updated performance model {args.performance_model}")

    rec = result.engine_recommendation
    logger.info(f"Recommended: {rec.recommended_provider or 'hybrid'} ({rec.confidence:.0%})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
