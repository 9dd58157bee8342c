"""Command line entry-point to recompute one company on demand."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from datetime import datetime
from typing import Optional

from ..config import EngineSettings
from ..services.recompute import RecomputeError, RecomputeOrchestrator

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def _load_json(path: Optional[str]):
    if not path:
        return None
    with open(path, encoding="utf-8") as handle:
        return json.load(handle)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Rebuild monthly summaries, metrics and alerts for one company."
    )
    parser.add_argument("--company-id", required=True, help="Company identifier to recompute.")
    parser.add_argument(
        "--amended-month",
        help="First month to rebuild (YYYY-MM). Defaults to the last closed months.",
    )
    parser.add_argument(
        "--source-synced-at",
        type=datetime.fromisoformat,
        help="ISO timestamp of the source sync that triggered the run.",
    )
    parser.add_argument(
        "--chart-of-accounts",
        help="Path to a JSON chart-of-accounts payload with ledger balances.",
    )
    parser.add_argument(
        "--current-balances",
        help="Path to a JSON payload with cash, debtors, creditors and loans arrays.",
    )
    parser.add_argument("--job-id", help="Identifier recorded on the idempotency lock.")
    parser.add_argument(
        "--fail-closed",
        action="store_true",
        help="Skip the run when the lock store is unavailable instead of proceeding.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print additional debugging information.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    settings = EngineSettings.from_env()
    if args.fail_closed:
        settings = dataclasses.replace(settings, lock_fail_open=False)

    orchestrator = RecomputeOrchestrator(settings=settings)
    try:
        result = orchestrator.recompute(
            args.company_id,
            amended_month=args.amended_month,
            source_synced_at=args.source_synced_at,
            chart_of_accounts_payload=_load_json(args.chart_of_accounts),
            current_balance_payload=_load_json(args.current_balances),
            job_id=args.job_id,
        )
    except RecomputeError as exc:
        LOGGER.error("Invalid recompute request: %s", exc)
        return 2

    LOGGER.info("Recompute summary: %s", json.dumps(result.to_dict(), default=str))
    return 1 if result.skipped else 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
