#!/usr/bin/env python3
"""Operator CLI for the IAM change detector.

This script provides command-line access to detection runs, baseline
snapshots, the assessment listing, store setup, and offline scoring of saved
query results for testing and debugging.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from detector.azure import AzureRestClient
from detector.config import Config, load_config, parse_store_connection, require_snapshot_settings, setup_logging
from detector.exceptions import ConfigurationError, DetectorError
from detector.ingestion import RowNormalizer
from detector.schemas import (
    ApprovedAdministrator,
    BaselineAssignment,
    PrivilegedRole,
    TabularResult,
    utcnow,
)
from detector.scoring import RiskScoringEngine, StaticReferenceData
from detector.store import DynamoDBStore
from enrichment.handler import build_pipeline, summary_payload
from ops.baseline import BaselineSnapshotBuilder


def load_reference_file(
    path: Path,
) -> Tuple[List[PrivilegedRole], List[ApprovedAdministrator], List[BaselineAssignment]]:
    """Read privileged roles, approved administrators and baseline rows from YAML."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    roles = [PrivilegedRole(**item) for item in data.get("privileged_roles") or []]
    admins = [ApprovedAdministrator(**item) for item in data.get("approved_administrators") or []]
    baseline = [BaselineAssignment(**item) for item in data.get("baseline_assignments") or []]
    return roles, admins, baseline


def load_query_result(path: Path) -> TabularResult:
    """Read a saved query result: a full API response or a bare columns/rows object."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if "tables" in data:
        return TabularResult.from_response(data)
    return TabularResult(**data)


def _open_store(config: Config) -> DynamoDBStore:
    if not config.store.connection_string:
        raise ConfigurationError("Store connection string not found (STORE_CONNECTION_STRING)")
    return DynamoDBStore.from_settings(parse_store_connection(config.store.connection_string))


def _emit(data: Any, output: Optional[Path]) -> None:
    text = json.dumps(data, indent=2, default=str)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"Results written to {output}")
    else:
        print(text)


def cmd_detect(args: argparse.Namespace, config: Config) -> int:
    pipeline = build_pipeline(config)
    try:
        summary = pipeline.run()
    finally:
        pipeline.client.close()
    _emit(summary_payload(summary), args.output)
    return 0 if summary.status == "completed" else 1


def cmd_snapshot(args: argparse.Namespace, config: Config) -> int:
    if args.subscription:
        config.azure.subscription_id = args.subscription
    require_snapshot_settings(config)
    store = _open_store(config)
    with AzureRestClient.from_config(config) as client:
        result = BaselineSnapshotBuilder(client, store, config).run(config.azure.subscription_id)
    _emit(result.model_dump(mode="json"), args.output)
    return 0


def cmd_risks(args: argparse.Namespace, config: Config) -> int:
    records = _open_store(config).recent_assessments(args.limit)
    _emit([r.model_dump(mode="json", by_alias=True) for r in records], args.output)
    return 0


def cmd_init_store(args: argparse.Namespace, config: Config) -> int:
    created = _open_store(config).create_tables()
    _emit({"created": created}, args.output)
    return 0


def cmd_seed_reference(args: argparse.Namespace, config: Config) -> int:
    roles, admins, _ = load_reference_file(args.file)
    counts = _open_store(config).seed_reference_data(roles, admins)
    _emit(counts, args.output)
    return 0


def cmd_score_rows(args: argparse.Namespace, config: Config) -> int:
    roles, admins, baseline = load_reference_file(args.reference)
    reference = StaticReferenceData.from_records(baseline, roles, admins)
    engine = RiskScoringEngine(reference, business_timezone=args.timezone or config.scoring.business_timezone)
    normalizer = RowNormalizer(allow_time_fallback=config.scoring.allow_time_fallback)

    results: List[Dict[str, Any]] = []
    for row in normalizer.normalize(load_query_result(args.file)):
        if not row.ok:
            results.append({"rowIndex": row.row_index, "error": row.error})
            continue
        assessment = engine.score(row.event)
        results.append({
            "rowIndex": row.row_index,
            "event": row.event.model_dump(mode="json", by_alias=True, exclude={"raw_payload"}),
            "assessment": assessment.model_dump(mode="json", by_alias=True),
        })

    _emit({
        "processed_at": utcnow().isoformat(),
        "total_rows": len(results),
        "errors": len([r for r in results if "error" in r]),
        "results": results,
    }, args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iam-detector",
        description="Azure role-assignment change detector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One detection run over the configured look-back window
  iam-detector detect

  # Snapshot current role assignments into the baseline
  iam-detector snapshot --subscription 00000000-0000-0000-0000-000000000000

  # Score a saved query result offline against reference data
  iam-detector score-rows rows.json --reference config/reference.yml
        """
    )
    parser.add_argument("--env", "-e", help="Configuration environment (default: $ENVIRONMENT or dev)")
    parser.add_argument("--config-dir", help="Directory holding {env}.yml")
    parser.add_argument("--output", "-o", type=Path, help="Output JSON file (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("detect", help="Run one detection pass").set_defaults(func=cmd_detect)

    snapshot = sub.add_parser("snapshot", help="Snapshot role assignments into the baseline")
    snapshot.add_argument("--subscription", help="Subscription id (default: configured)")
    snapshot.set_defaults(func=cmd_snapshot)

    risks = sub.add_parser("risks", help="List recent risk assessments")
    risks.add_argument("--limit", type=int, default=100, help="Maximum rows (default: 100)")
    risks.set_defaults(func=cmd_risks)

    sub.add_parser("init-store", help="Create store tables").set_defaults(func=cmd_init_store)

    seed = sub.add_parser("seed-reference", help="Load privileged roles and approved administrators")
    seed.add_argument("file", type=Path, help="Reference YAML file")
    seed.set_defaults(func=cmd_seed_reference)

    score = sub.add_parser("score-rows", help="Normalize and score a saved query result offline")
    score.add_argument("file", type=Path, help="Saved query result (JSON)")
    score.add_argument("--reference", "-r", type=Path, required=True, help="Reference YAML file")
    score.add_argument("--timezone", help="Business timezone (default: configured)")
    score.set_defaults(func=cmd_score_rows)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    config = load_config(args.env, args.config_dir)
    if args.verbose:
        config.logging.level = "DEBUG"
    setup_logging(config.logging)

    try:
        return args.func(args, config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except (DetectorError, OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
