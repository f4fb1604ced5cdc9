"""Scheduled detection run for role-assignment changes.

This module implements the core detection loop: query the activity log for
recent role-assignment operations, normalize the rows, and run each event
through enrichment, storage, scoring and assessment storage. Each event is
an isolated unit of work; one failure never stops the rest of the run.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Set, Tuple

from detector.azure import AzureRestClient
from detector.config import Config, load_config, require_pipeline_settings, setup_logging
from detector.exceptions import ConfigurationError, PersistenceError, SourceQueryError
from detector.ingestion import ActivityLogQuery, RowNormalizer, fetch_activity_rows
from detector.schemas import ChangeEvent, RunSummary, UnitOutcome, UnitStatus
from detector.scoring import RiskScoringEngine
from detector.store import DynamoDBStore, EventStore
from enrichment.resolver import ContextResolver

logger = logging.getLogger(__name__)


class DetectionPipeline:
    """One detection run over the configured look-back window."""

    def __init__(
        self,
        client: AzureRestClient,
        store: EventStore,
        resolver: ContextResolver,
        scorer: RiskScoringEngine,
        config: Config,
    ):
        """Initialize the pipeline.

        Args:
            client: Azure REST client used for the log query
            store: Persistence gateway for events and assessments
            resolver: Context resolver for write events
            scorer: Risk scoring engine bound to reference data
            config: Loaded configuration
        """
        self.client = client
        self.store = store
        self.resolver = resolver
        self.scorer = scorer
        self.config = config
        self.normalizer = RowNormalizer(allow_time_fallback=config.scoring.allow_time_fallback)

    def run(self) -> RunSummary:
        """Fetch, normalize and process every event in the window.

        Returns:
            RunSummary with per-status counts. A failed log query yields a
            summary with status "failed" and no units.
        """
        started = time.monotonic()
        summary = RunSummary()
        logger.info(f"Starting detection run {summary.run_id}")

        query = ActivityLogQuery(lookback_minutes=self.config.log_analytics.lookback_minutes)
        try:
            result = fetch_activity_rows(
                self.client,
                self.config.log_analytics.workspace_id,
                query,
                timeout=self.config.log_analytics.timeout_seconds,
            )
        except SourceQueryError as e:
            logger.error(f"Detection run {summary.run_id} aborted: {e}")
            summary.status = "failed"
            summary.errors.append(str(e))
            summary.processing_time_seconds = time.monotonic() - started
            return summary

        rows = self.normalizer.normalize(result)
        summary.total_rows = len(rows)

        events: List[Tuple[int, ChangeEvent]] = []
        seen: Set[str] = set()
        for row in rows:
            if not row.ok:
                summary.record(UnitOutcome(status=UnitStatus.SKIPPED, row_index=row.row_index, error=row.error))
            elif row.event.event_id in seen:
                logger.info(f"Row {row.row_index} repeats event {row.event.event_id} in this batch")
                summary.record(UnitOutcome(
                    status=UnitStatus.DUPLICATE,
                    event_id=row.event.event_id,
                    row_index=row.row_index,
                ))
            else:
                seen.add(row.event.event_id)
                events.append((row.row_index, row.event))

        for outcome in self._process_all(events, started):
            summary.record(outcome)

        summary.processing_time_seconds = time.monotonic() - started
        logger.info(
            f"Detection run {summary.run_id} finished in {summary.processing_time_seconds:.2f}s: "
            f"{summary.processed} processed, {summary.recovered} recovered, "
            f"{summary.duplicates} duplicates, {summary.skipped} skipped, {summary.failed} failed, "
            f"{summary.high_risk_events} high risk"
        )
        return summary

    def _process_all(self, events: List[Tuple[int, ChangeEvent]], started: float) -> List[UnitOutcome]:
        """Run units concurrently; units not started by the deadline are skipped."""
        if not events:
            return []

        enrichment = self.config.enrichment
        deadline = started + enrichment.run_deadline_seconds
        outcomes: List[UnitOutcome] = []

        with ThreadPoolExecutor(max_workers=enrichment.max_concurrency) as executor:
            futures = [
                (row_index, event, executor.submit(self.process_event, event, row_index))
                for row_index, event in events
            ]
            _, not_done = wait([f for _, _, f in futures], timeout=max(0.0, deadline - time.monotonic()))
            cancelled = {f for f in not_done if f.cancel()}
            if cancelled:
                logger.warning(f"Run deadline reached; {len(cancelled)} events not started")

        for row_index, event, future in futures:
            if future in cancelled:
                outcomes.append(UnitOutcome(
                    status=UnitStatus.SKIPPED,
                    event_id=event.event_id,
                    row_index=row_index,
                    error="run deadline reached before processing",
                ))
            else:
                outcomes.append(future.result())
        return outcomes

    def process_event(self, event: ChangeEvent, row_index: Optional[int] = None) -> UnitOutcome:
        """Enrich, store, score and record one event.

        Events that already have an assessment are reported as duplicates
        before any enrichment lookup is made. Never raises: any failure is
        reported on the returned outcome.
        """
        try:
            if self.store.has_assessment(event.event_id):
                logger.info(f"Event {event.event_id} already processed")
                return UnitOutcome(status=UnitStatus.DUPLICATE, event_id=event.event_id, row_index=row_index)
        except PersistenceError as e:
            logger.error(f"Persistence failed for event {event.event_id}: {e}")
            return UnitOutcome(status=UnitStatus.FAILED, event_id=event.event_id, row_index=row_index, error=str(e))

        enrichment = self.resolver.enrich(event)
        event = enrichment.event
        try:
            status = UnitStatus.PROCESSED
            if not self.store.store_event(event):
                logger.info(f"Event {event.event_id} stored without assessment; scoring it now")
                status = UnitStatus.RECOVERED

            assessment = self.scorer.score(event)
            self.store.store_assessment(assessment)
        except PersistenceError as e:
            logger.error(f"Persistence failed for event {event.event_id}: {e}")
            return UnitOutcome(
                status=UnitStatus.FAILED,
                event_id=event.event_id,
                row_index=row_index,
                enriched=enrichment.enriched,
                error=str(e),
            )
        except Exception as e:
            logger.exception(f"Error processing event {event.event_id}: {e}")
            return UnitOutcome(
                status=UnitStatus.FAILED,
                event_id=event.event_id,
                row_index=row_index,
                enriched=enrichment.enriched,
                error=f"{type(e).__name__}: {e}",
            )

        if assessment.requires_approval:
            logger.warning(
                f"HIGH RISK DETECTED: event {event.event_id} score {assessment.risk_score} "
                f"({assessment.risk_level.value}) caller={event.caller} reasons: {assessment.reason}"
            )

        return UnitOutcome(
            status=status,
            event_id=event.event_id,
            row_index=row_index,
            assessment=assessment,
            enriched=enrichment.enriched,
        )


def build_pipeline(config: Config) -> DetectionPipeline:
    """Wire the pipeline's collaborators from configuration.

    Raises:
        ConfigurationError: If settings or credentials are missing.
    """
    require_pipeline_settings(config)
    client = AzureRestClient.from_config(config)
    store = DynamoDBStore.from_connection_string(config.store.connection_string)
    return DetectionPipeline(
        client=client,
        store=store,
        resolver=ContextResolver(client, api_version=config.azure.role_assignments_api_version),
        scorer=RiskScoringEngine(store, business_timezone=config.scoring.business_timezone),
        config=config,
    )


def summary_payload(summary: RunSummary) -> Dict[str, Any]:
    return summary.model_dump(mode="json", exclude={"outcomes"})


def lambda_handler(event: Optional[Dict[str, Any]], context: Any) -> Dict[str, Any]:
    """Scheduled entry point for a detection run.

    Missing configuration is logged and reported as a "misconfigured" summary
    rather than raised, so the scheduler does not retry a run that cannot work.
    """
    config = load_config()
    setup_logging(config.logging)

    try:
        pipeline = build_pipeline(config)
    except ConfigurationError as e:
        logger.error(f"Detection run not started: {e}")
        return summary_payload(RunSummary(status="misconfigured", errors=[str(e)]))

    try:
        summary = pipeline.run()
    finally:
        pipeline.client.close()
    return summary_payload(summary)
