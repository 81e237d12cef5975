from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Callable, Optional

from pydantic import ValidationError

from backend.app.models import (
    ApplicationStatus,
    ConnectionRecord,
    DispatchOutcome,
    HireCompletedPayload,
    InterviewScheduledPayload,
    OfferExtendedPayload,
    WebhookEventType,
    WebhookRecord,
    format_amount,
)
from backend.app.services.ats_mapping import (
    map_application_data,
    map_candidate_data,
    map_job_data,
)
from backend.app.store import RecordStore
from backend.app.webhook_store import WebhookStore

logger = logging.getLogger("ats_pipeline.router")

NOTE_AUTHOR = "ATS System"

ENTITY_KINDS = {
    WebhookEventType.job_created: "job",
    WebhookEventType.job_updated: "job",
    WebhookEventType.candidate_created: "candidate",
    WebhookEventType.candidate_updated: "candidate",
    WebhookEventType.application_submitted: "application",
    WebhookEventType.application_updated: "application",
    WebhookEventType.interview_scheduled: "application",
    WebhookEventType.offer_extended: "application",
    WebhookEventType.hire_completed: "application",
}

EntityKey = tuple[int, str, str]


class HandlerError(Exception):
    pass


def entity_document(payload: Mapping[str, Any], kind: str) -> dict[str, Any]:
    """Provider document for ``kind`` inside a webhook payload.

    Accepts either a nested object (``{"job": {...}}``) or a flat payload where
    ``job_id``/``candidate_id``/``application_id`` names the entity.
    """
    nested = payload.get(kind)
    if isinstance(nested, Mapping):
        return dict(nested)
    document = dict(payload)
    key = f"{kind}_id"
    if document.get(key) not in (None, ""):
        document["id"] = document[key]
    return document


def note_source_key(record: WebhookRecord) -> str:
    return f"webhook:{record.external_webhook_id}"


class EventRouter:
    def __init__(self, store: RecordStore, webhook_store: WebhookStore) -> None:
        self.store = store
        self.webhook_store = webhook_store
        self._handlers: dict[
            WebhookEventType, Callable[[ConnectionRecord, WebhookRecord], DispatchOutcome]
        ] = {
            WebhookEventType.job_created: self._handle_job,
            WebhookEventType.job_updated: self._handle_job,
            WebhookEventType.application_submitted: self._handle_application,
            WebhookEventType.application_updated: self._handle_application,
            WebhookEventType.candidate_created: self._handle_candidate,
            WebhookEventType.candidate_updated: self._handle_candidate,
            WebhookEventType.interview_scheduled: self._handle_interview,
            WebhookEventType.offer_extended: self._handle_offer,
            WebhookEventType.hire_completed: self._handle_hire,
        }

    def entity_key(self, record: WebhookRecord) -> Optional[EntityKey]:
        kind = ENTITY_KINDS.get(record.event_type)
        if not kind:
            return None
        document = entity_document(record.payload, kind)
        external_id = document.get("id")
        if external_id in (None, ""):
            return None
        return (record.connection_id, kind, str(external_id))

    def dispatch(self, connection: ConnectionRecord, record: WebhookRecord) -> DispatchOutcome:
        """Applies one webhook and marks it processed.

        Handler failures surface as ``HandlerError`` and leave the record's
        status untouched for the caller to fail. A record carrying a lease can
        only be completed while that lease is still held.
        """
        handler = self._handlers.get(record.event_type)
        if handler is None:
            logger.warning(
                "webhook_unknown_event webhook_id=%s connection_id=%s raw_event_type=%s",
                record.id,
                connection.id,
                record.raw_event_type,
            )
            outcome = DispatchOutcome.ignored
        else:
            try:
                outcome = handler(connection, record)
            except HandlerError:
                raise
            except Exception as exc:
                raise HandlerError(str(exc) or exc.__class__.__name__) from exc

        if outcome == DispatchOutcome.entity_not_found:
            logger.info(
                "webhook_entity_not_found webhook_id=%s connection_id=%s event_type=%s",
                record.id,
                connection.id,
                record.event_type.value,
            )
        self.webhook_store.mark_processed(record.id, outcome, claimed_by=record.claimed_by)
        return outcome

    def _handle_job(self, connection: ConnectionRecord, record: WebhookRecord) -> DispatchOutcome:
        data = map_job_data(entity_document(record.payload, "job"), connection.field_mapping)
        self.store.upsert_job_posting(connection.id, data)
        return DispatchOutcome.applied

    def _handle_candidate(
        self, connection: ConnectionRecord, record: WebhookRecord
    ) -> DispatchOutcome:
        data = map_candidate_data(
            entity_document(record.payload, "candidate"), connection.field_mapping
        )
        self.store.upsert_candidate(connection.id, data)
        return DispatchOutcome.applied

    def _handle_application(
        self, connection: ConnectionRecord, record: WebhookRecord
    ) -> DispatchOutcome:
        data = map_application_data(
            entity_document(record.payload, "application"), connection.field_mapping
        )
        application, _ = self.store.upsert_application(connection.id, data)
        if application is None:
            return DispatchOutcome.entity_not_found
        return DispatchOutcome.applied

    def _handle_interview(
        self, connection: ConnectionRecord, record: WebhookRecord
    ) -> DispatchOutcome:
        payload = self._validate(InterviewScheduledPayload, record)
        application = self._find_application(connection, payload.application_id)
        if application is None:
            return DispatchOutcome.entity_not_found
        self.store.update_application_status(application.id, ApplicationStatus.interview)
        self.store.add_application_note(
            application.id,
            f"Interview scheduled for {payload.interview_date or ''} "
            f"({payload.interview_type}). {payload.notes}",
            author=NOTE_AUTHOR,
            source_key=note_source_key(record),
        )
        return DispatchOutcome.applied

    def _handle_offer(self, connection: ConnectionRecord, record: WebhookRecord) -> DispatchOutcome:
        payload = self._validate(OfferExtendedPayload, record)
        application = self._find_application(connection, payload.application_id)
        if application is None:
            return DispatchOutcome.entity_not_found
        self.store.update_application_status(application.id, ApplicationStatus.offer)
        if payload.offered_salary:
            self.store.set_offered_salary(application.id, payload.offered_salary)
        if payload.offer_details:
            self.store.add_application_note(
                application.id,
                f"Offer extended: {payload.offer_details}",
                author=NOTE_AUTHOR,
                source_key=note_source_key(record),
            )
        return DispatchOutcome.applied

    def _handle_hire(self, connection: ConnectionRecord, record: WebhookRecord) -> DispatchOutcome:
        payload = self._validate(HireCompletedPayload, record)
        application = self._find_application(connection, payload.application_id)
        if application is None:
            return DispatchOutcome.entity_not_found
        self.store.update_application_status(application.id, ApplicationStatus.hired)
        if payload.final_salary:
            self.store.set_offered_salary(application.id, payload.final_salary)
        note = "Hire completed."
        if payload.start_date:
            note += f" Start date: {payload.start_date}."
        if payload.final_salary:
            note += f" Final salary: ${format_amount(payload.final_salary)}."
        self.store.add_application_note(
            application.id,
            note,
            author=NOTE_AUTHOR,
            source_key=note_source_key(record),
        )
        return DispatchOutcome.applied

    def _find_application(self, connection: ConnectionRecord, external_id: Optional[str]):
        if not external_id:
            return None
        return self.store.find_application(connection.id, external_id)

    @staticmethod
    def _validate(model, record: WebhookRecord):
        try:
            return model.model_validate(record.payload)
        except ValidationError as exc:
            raise HandlerError(
                f"invalid {record.event_type.value} payload: {exc.error_count()} error(s)"
            ) from exc
