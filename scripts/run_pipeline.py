#!/usr/bin/env python3
"""
Run a quality pipeline operation from the command line.

Examples:
    python scripts/run_pipeline.py score-batch --limit 500
    python scripts/run_pipeline.py dedup-sweep
    python scripts/run_pipeline.py resume --run-id <run id>
    python scripts/run_pipeline.py check
"""

import argparse
import asyncio
import json
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from quality_pipeline.db.session import engine
from quality_pipeline.exceptions import PipelineError
from quality_pipeline.logging_config import setup_logging
from quality_pipeline.scoring.coherence import RemoteCoherenceScorer
from quality_pipeline.worker.orchestrator import PipelineOrchestrator

OPERATIONS = [
    "score-batch",
    "rescore-all",
    "score-all",
    "score-single",
    "dedup-sweep",
    "check",
    "stats",
    "resume",
    "cancel",
    "refresh-corpus",
]


def build_kwargs(args: argparse.Namespace) -> dict:
    if args.operation in ("check", "stats"):
        return {}
    if args.operation in ("resume", "cancel"):
        if not args.run_id:
            raise SystemExit(f"{args.operation} requires --run-id")
        return {"run_id": args.run_id}

    kwargs = {"trigger": "cli"}
    if args.operation == "score-single":
        if not args.report_id:
            raise SystemExit("score-single requires --report-id")
        kwargs["report_id"] = args.report_id
    elif args.operation == "score-batch" and args.limit:
        kwargs["limit"] = args.limit
    return kwargs


async def run(args: argparse.Namespace) -> int:
    orchestrator_kwargs = {}
    if args.no_lock:
        orchestrator_kwargs["lock_manager"] = None
    if args.workers:
        orchestrator_kwargs["scoring_workers"] = args.workers
        orchestrator_kwargs["dedup_workers"] = args.workers
    orchestrator = PipelineOrchestrator(**orchestrator_kwargs)

    exit_code = 0
    try:
        result = await orchestrator.run_operation(args.operation, **build_kwargs(args))
        if isinstance(result, dict) and result.get("status") == "failed":
            exit_code = 1
        if args.operation == "check" and not result.get("ok", True):
            exit_code = 1
    except PipelineError as e:
        result = {"error": type(e).__name__, "message": str(e)}
        exit_code = 2
    finally:
        if isinstance(orchestrator.coherence_scorer, RemoteCoherenceScorer):
            await orchestrator.coherence_scorer.close()
        if orchestrator.lock_manager is not None:
            await orchestrator.lock_manager.close()
        await engine.dispose()

    print(json.dumps(result, indent=2, default=str))
    return exit_code


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run a report quality pipeline operation")
    parser.add_argument("operation", choices=OPERATIONS, help="Operation to run")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum number of reports for score-batch (default: all unscored)",
    )
    parser.add_argument("--report-id", default=None, help="Report id for score-single")
    parser.add_argument("--run-id", default=None, help="Run id for resume or cancel")
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Override scoring and dedup concurrency",
    )
    parser.add_argument(
        "--no-lock",
        action="store_true",
        help="Run without the Redis run lock (single-process use only)",
    )

    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args)))
