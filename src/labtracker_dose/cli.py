"""CLI entry point for offline dose-response predictions."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import math
import sys
from pathlib import Path
from typing import Any, Sequence

import psycopg

from .config import Config, EnginePolicy
from .enrichment import EnrichmentOrchestrator
from .enrichment_cache import EnrichmentCache
from .errors import DoseEngineError, InvalidDoseError
from .local_priors import LocalPriorStore
from .logging import setup_logging
from .models import UNIT_SYSTEMS, PredictionSet
from .projection import project, project_scenarios
from .quota import InMemoryQuotaStore, PostgresQuotaStore, QuotaLedger
from .remote_priors import RemotePriorClient

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labtracker-dose",
        description="Fit personal dose-response models from lab observations.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    predict = subparsers.add_parser(
        "predict",
        help="Print blended predictions (and optional projections) as JSON.",
    )
    predict.add_argument(
        "--input",
        required=True,
        help="JSON file with a list of observation rows (or {\"observations\": [...]}).",
    )
    predict.add_argument(
        "--unit-system",
        default="eu",
        choices=UNIT_SYSTEMS,
        help="Unit system used to select population priors.",
    )
    predict.add_argument(
        "--enrichment",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Request remote population priors for weak personal fits.",
    )
    predict.add_argument(
        "--target-dose",
        action="append",
        type=float,
        default=None,
        help="Weekly dose (mg) to project every prediction to (repeatable).",
    )
    predict.add_argument(
        "--scenarios",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Include the default dose scenario grid for each prediction.",
    )
    return parser


def load_rows(path: str | Path) -> list[Any]:
    with Path(path).open() as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("observations", [])
    if not isinstance(data, list):
        raise DoseEngineError("Input must be a JSON list of observations or an object with 'observations'")
    return data


def render_prediction_set(
    result: PredictionSet,
    target_doses: Sequence[float] = (),
    *,
    scenarios: bool = False,
    policy: EnginePolicy | None = None,
) -> dict[str, Any]:
    predictions = []
    for prediction in result.predictions:
        item = dataclasses.asdict(prediction)
        if target_doses:
            item["projections"] = [
                dataclasses.asdict(project(prediction, dose, policy)) for dose in target_doses
            ]
        if scenarios:
            item["scenarios"] = [
                dataclasses.asdict(projection) for projection in project_scenarios(prediction, policy=policy)
            ]
        predictions.append(item)

    rendered = dataclasses.asdict(result)
    rendered["predictions"] = predictions
    rendered["api_assisted_count"] = result.api_assisted_count
    return rendered


async def _run(args: argparse.Namespace) -> int:
    config = Config.from_env()
    policy = EnginePolicy.from_env()
    setup_logging(config.log_format)

    target_doses = args.target_dose or []
    for dose in target_doses:
        if not math.isfinite(dose) or dose < 0:
            raise InvalidDoseError(f"Target dose must be a finite non-negative number, got {dose!r}")

    rows = load_rows(args.input)
    enabled = bool(args.enrichment) and config.remote_enabled

    async with contextlib.AsyncExitStack() as stack:
        remote_client = None
        store = InMemoryQuotaStore()
        if enabled:
            remote_client = await stack.enter_async_context(
                RemotePriorClient(config.remote_priors_url, config.remote_timeout_seconds)
            )
            if config.database_url:
                try:
                    conn = await stack.enter_async_context(
                        await psycopg.AsyncConnection.connect(config.database_url, autocommit=True)
                    )
                    store = PostgresQuotaStore(conn)
                    await store.ensure_table()
                except psycopg.Error as exc:
                    logger.warning("Quota database unavailable, running without enrichment: %s", exc)
                    enabled = False

        orchestrator = EnrichmentOrchestrator(
            local_store=LocalPriorStore(),
            remote_client=remote_client,
            quota=QuotaLedger(
                store,
                max_per_day=config.max_runs_per_day,
                max_per_month=config.max_runs_per_month,
            ),
            cache=EnrichmentCache(config.cache_max_entries, config.cache_ttl_seconds),
            policy=policy,
        )
        result = await orchestrator.compute_predictions(rows, args.unit_system, enabled=enabled)

    rendered = render_prediction_set(result, target_doses, scenarios=bool(args.scenarios), policy=policy)
    print(json.dumps(rendered, indent=2, sort_keys=True, default=str))
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        code = asyncio.run(_run(args))
    except (DoseEngineError, OSError, json.JSONDecodeError) as exc:
        print(f"labtracker-dose: error: {exc}", file=sys.stderr)
        code = 2
    raise SystemExit(code)


if __name__ == "__main__":
    main()
