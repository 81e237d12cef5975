from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Optional

from backend.app.models import ConnectionRecord, EntitySyncCounts, SyncResult
from backend.app.services.ats_client import AtsProviderClient, ProviderRequestError
from backend.app.services.ats_mapping import (
    map_application_data,
    map_candidate_data,
    map_job_data,
)
from backend.app.store import RecordStore

logger = logging.getLogger("ats_pipeline.sync")


class AtsSyncService:
    """Pulls jobs, candidates and applications for one connection into the domain store.

    A failed job fetch aborts the run; candidate and application fetch
    failures are logged and leave those counts at zero.
    """

    def __init__(self, store: RecordStore, client: Optional[AtsProviderClient] = None) -> None:
        self.store = store
        self.client = client or AtsProviderClient()

    def sync_connection(
        self, connection: ConnectionRecord, filters: Optional[dict[str, str]] = None
    ) -> SyncResult:
        filters = filters or {}
        try:
            documents = self.client.fetch_jobs(connection, filters)
        except ProviderRequestError as exc:
            logger.error(
                "sync_jobs_fetch_failed connection_id=%s error=%s", connection.id, exc
            )
            return SyncResult.failure(str(exc))

        jobs = self._apply(
            connection,
            documents,
            "job",
            lambda doc: self.store.upsert_job_posting(
                connection.id, map_job_data(doc, connection.field_mapping)
            ),
        )
        candidates = self._apply(
            connection,
            self._fetch_optional(connection, "candidates", self.client.fetch_candidates),
            "candidate",
            lambda doc: self.store.upsert_candidate(
                connection.id, map_candidate_data(doc, connection.field_mapping)
            ),
        )
        applications = self._apply(
            connection,
            self._fetch_optional(connection, "applications", self.client.fetch_applications),
            "application",
            lambda doc: self.store.upsert_application(
                connection.id, map_application_data(doc, connection.field_mapping)
            ),
        )
        result = SyncResult(
            success=True, jobs=jobs, candidates=candidates, applications=applications
        )
        logger.info(
            "sync_completed connection_id=%s processed=%s created=%s updated=%s failed=%s",
            connection.id,
            result.total_processed,
            result.total_created,
            result.total_updated,
            result.total_failed,
        )
        return result

    def _fetch_optional(
        self,
        connection: ConnectionRecord,
        label: str,
        fetch: Callable[[ConnectionRecord], list[Any]],
    ) -> list[Any]:
        try:
            return fetch(connection)
        except ProviderRequestError as exc:
            logger.error(
                "sync_fetch_failed connection_id=%s entity=%s error=%s",
                connection.id,
                label,
                exc,
            )
            return []

    @staticmethod
    def _apply(
        connection: ConnectionRecord,
        documents: list[Any],
        label: str,
        upsert: Callable[[Mapping[str, Any]], tuple[Optional[Any], bool]],
    ) -> EntitySyncCounts:
        counts = EntitySyncCounts()
        for document in documents:
            counts.processed += 1
            if not isinstance(document, Mapping):
                counts.failed += 1
                logger.warning(
                    "sync_document_invalid connection_id=%s entity=%s", connection.id, label
                )
                continue
            try:
                record, created = upsert(document)
            except ValueError as exc:
                counts.failed += 1
                logger.warning(
                    "sync_document_failed connection_id=%s entity=%s external_id=%s error=%s",
                    connection.id,
                    label,
                    document.get("id", "unknown"),
                    exc,
                )
                continue
            if record is None:
                counts.failed += 1
                logger.warning(
                    "sync_references_missing connection_id=%s entity=%s external_id=%s",
                    connection.id,
                    label,
                    document.get("id", "unknown"),
                )
            elif created:
                counts.created += 1
            else:
                counts.updated += 1
        return counts
