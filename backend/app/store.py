from __future__ import annotations

import json
from typing import Any, Callable, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Table, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    ApplicationNote,
    ApplicationRecord,
    ApplicationStatus,
    CandidateRecord,
    JobPostingRecord,
    utc_now,
)
from backend.app.persistence import SqlPersistence

RecordT = TypeVar("RecordT", bound=BaseModel)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreNotFoundError(Exception):
    pass


class InvalidStateError(Exception):
    pass


class RecordStore:
    """Local copies of ATS job postings, candidates and applications.

    Each record is one row keyed by local id and unique on
    ``(connection_id, external id)``. Every upsert is keyed on the external id,
    so replaying the same provider document leaves a single record behind, and
    every change re-reads its row inside the transaction that writes it.
    """

    def __init__(self, persistence: Optional[SqlPersistence] = None) -> None:
        self.persistence = persistence or SqlPersistence()
        self.jobs = self.persistence.ats_job_postings
        self.candidates = self.persistence.ats_candidates
        self.applications = self.persistence.ats_applications

    def upsert_job_posting(
        self, connection_id: int, data: dict[str, Any]
    ) -> tuple[JobPostingRecord, bool]:
        external_id = str(data["external_job_id"])
        return self._on_conflict_retry(
            lambda: self._upsert_external(
                self.jobs,
                JobPostingRecord,
                "job",
                connection_id,
                "external_job_id",
                external_id,
                data,
            )
        )

    def upsert_candidate(
        self, connection_id: int, data: dict[str, Any]
    ) -> tuple[CandidateRecord, bool]:
        external_id = str(data["external_candidate_id"])
        return self._on_conflict_retry(
            lambda: self._upsert_external(
                self.candidates,
                CandidateRecord,
                "cand",
                connection_id,
                "external_candidate_id",
                external_id,
                data,
            )
        )

    def upsert_application(
        self, connection_id: int, data: dict[str, Any]
    ) -> tuple[Optional[ApplicationRecord], bool]:
        """Returns ``(None, False)`` when the referenced job or candidate is not known yet."""
        fields = dict(data)
        external_job_id = str(fields.pop("external_job_id", "") or "")
        external_candidate_id = str(fields.pop("external_candidate_id", "") or "")
        external_application_id = str(fields.get("external_application_id", "") or "")

        def attempt() -> tuple[Optional[ApplicationRecord], bool]:
            with self.persistence.transaction() as conn:
                job = self._job_by_external(conn, connection_id, external_job_id)
                candidate = self._candidate_by_external(conn, connection_id, external_candidate_id)
                if not job or not candidate:
                    return None, False

                existing = None
                if external_application_id:
                    existing = self._load(
                        conn,
                        self.applications,
                        ApplicationRecord,
                        self.applications.c.connection_id == connection_id,
                        self.applications.c.external_application_id == external_application_id,
                        for_update=True,
                    )
                if existing is None:
                    existing = self._load(
                        conn,
                        self.applications,
                        ApplicationRecord,
                        self.applications.c.job_posting_id == job.id,
                        self.applications.c.candidate_id == candidate.id,
                        for_update=True,
                    )
                now = utc_now()
                if existing:
                    status_changed = (
                        "status" in fields
                        and ApplicationStatus(fields["status"]) != existing.status
                    )
                    application = ApplicationRecord.model_validate(
                        {
                            **existing.model_dump(),
                            **fields,
                            "status_updated_at_utc": (
                                now if status_changed else existing.status_updated_at_utc
                            ),
                            "updated_at_utc": now,
                        }
                    )
                    self._update(conn, self.applications, application)
                    return application, False
                application = ApplicationRecord.model_validate(
                    {
                        **fields,
                        "id": new_id("app"),
                        "connection_id": connection_id,
                        "job_posting_id": job.id,
                        "candidate_id": candidate.id,
                        "status_updated_at_utc": now,
                        "created_at_utc": now,
                        "updated_at_utc": now,
                    }
                )
                self._insert(conn, self.applications, application)
                return application, True

        return self._on_conflict_retry(attempt)

    def get_job_posting_by_external(
        self, connection_id: int, external_job_id: str
    ) -> Optional[JobPostingRecord]:
        with self.persistence.transaction() as conn:
            return self._job_by_external(conn, connection_id, external_job_id)

    def get_candidate_by_external(
        self, connection_id: int, external_candidate_id: str
    ) -> Optional[CandidateRecord]:
        with self.persistence.transaction() as conn:
            return self._candidate_by_external(conn, connection_id, external_candidate_id)

    def find_application(
        self, connection_id: int, external_application_id: str
    ) -> Optional[ApplicationRecord]:
        if not external_application_id:
            return None
        with self.persistence.transaction() as conn:
            return self._load(
                conn,
                self.applications,
                ApplicationRecord,
                self.applications.c.connection_id == connection_id,
                self.applications.c.external_application_id == external_application_id,
            )

    def get_application(self, application_id: str) -> ApplicationRecord:
        with self.persistence.transaction() as conn:
            return self._require_application(conn, application_id)

    def update_application_status(
        self,
        application_id: str,
        status: ApplicationStatus,
        reason: Optional[str] = None,
    ) -> ApplicationRecord:
        def change(application: ApplicationRecord) -> Optional[ApplicationRecord]:
            if application.status == status:
                return None
            now = utc_now()
            return application.model_copy(
                update={
                    "status": status,
                    "status_updated_at_utc": now,
                    "rejection_reason": (
                        reason or "" if status == ApplicationStatus.rejected
                        else application.rejection_reason
                    ),
                    "updated_at_utc": now,
                }
            )

        return self._change_application(application_id, change)[0]

    def set_offered_salary(self, application_id: str, amount: float) -> ApplicationRecord:
        def change(application: ApplicationRecord) -> Optional[ApplicationRecord]:
            if application.offered_salary == amount:
                return None
            return application.model_copy(
                update={"offered_salary": amount, "updated_at_utc": utc_now()}
            )

        return self._change_application(application_id, change)[0]

    def add_application_note(
        self,
        application_id: str,
        note: str,
        *,
        author: Optional[str] = None,
        source_key: Optional[str] = None,
    ) -> tuple[ApplicationRecord, bool]:
        """Appends a note unless one with the same ``source_key`` is already attached."""

        def change(application: ApplicationRecord) -> Optional[ApplicationRecord]:
            if source_key and any(item.source_key == source_key for item in application.notes):
                return None
            now = utc_now()
            notes = list(application.notes)
            notes.append(
                ApplicationNote(note=note, author=author, source_key=source_key, created_at_utc=now)
            )
            return application.model_copy(update={"notes": notes, "updated_at_utc": now})

        return self._change_application(application_id, change)

    def list_applications(self, connection_id: Optional[int] = None) -> list[ApplicationRecord]:
        query = select(self.applications).order_by(
            self.applications.c.created_at_utc, self.applications.c.id
        )
        if connection_id is not None:
            query = query.where(self.applications.c.connection_id == connection_id)
        return self._list(query, ApplicationRecord)

    def list_job_postings(self, connection_id: Optional[int] = None) -> list[JobPostingRecord]:
        query = select(self.jobs).order_by(self.jobs.c.connection_id, self.jobs.c.external_job_id)
        if connection_id is not None:
            query = query.where(self.jobs.c.connection_id == connection_id)
        return self._list(query, JobPostingRecord)

    def list_candidates(self, connection_id: Optional[int] = None) -> list[CandidateRecord]:
        query = select(self.candidates).order_by(
            self.candidates.c.connection_id, self.candidates.c.external_candidate_id
        )
        if connection_id is not None:
            query = query.where(self.candidates.c.connection_id == connection_id)
        return self._list(query, CandidateRecord)

    @staticmethod
    def _on_conflict_retry(attempt: Callable[[], Any]) -> Any:
        # A concurrent insert of the same external id shows up as a unique
        # violation; the second attempt then finds the row and updates it.
        try:
            return attempt()
        except IntegrityError:
            return attempt()

    def _upsert_external(
        self,
        table: Table,
        model: type[RecordT],
        prefix: str,
        connection_id: int,
        key_column: str,
        external_id: str,
        data: dict[str, Any],
    ) -> tuple[RecordT, bool]:
        with self.persistence.transaction() as conn:
            existing = self._load(
                conn,
                table,
                model,
                table.c.connection_id == connection_id,
                table.c[key_column] == external_id,
                for_update=True,
            )
            now = utc_now()
            if existing:
                record = model.model_validate(
                    {**existing.model_dump(), **data, "updated_at_utc": now}
                )
                self._update(conn, table, record)
                return record, False
            record = model.model_validate(
                {
                    **data,
                    "id": new_id(prefix),
                    "connection_id": connection_id,
                    "created_at_utc": now,
                    "updated_at_utc": now,
                }
            )
            self._insert(conn, table, record)
            return record, True

    def _change_application(
        self,
        application_id: str,
        change: Callable[[ApplicationRecord], Optional[ApplicationRecord]],
    ) -> tuple[ApplicationRecord, bool]:
        with self.persistence.transaction() as conn:
            application = self._require_application(conn, application_id, for_update=True)
            updated = change(application)
            if updated is None:
                return application, False
            self._update(conn, self.applications, updated)
            return updated, True

    def _job_by_external(
        self, conn: Connection, connection_id: int, external_job_id: str
    ) -> Optional[JobPostingRecord]:
        if not external_job_id:
            return None
        return self._load(
            conn,
            self.jobs,
            JobPostingRecord,
            self.jobs.c.connection_id == connection_id,
            self.jobs.c.external_job_id == external_job_id,
        )

    def _candidate_by_external(
        self, conn: Connection, connection_id: int, external_candidate_id: str
    ) -> Optional[CandidateRecord]:
        if not external_candidate_id:
            return None
        return self._load(
            conn,
            self.candidates,
            CandidateRecord,
            self.candidates.c.connection_id == connection_id,
            self.candidates.c.external_candidate_id == external_candidate_id,
        )

    def _require_application(
        self, conn: Connection, application_id: str, *, for_update: bool = False
    ) -> ApplicationRecord:
        application = self._load(
            conn,
            self.applications,
            ApplicationRecord,
            self.applications.c.id == application_id,
            for_update=for_update,
        )
        if not application:
            raise StoreNotFoundError(f"application not found: {application_id}")
        return application

    def _load(
        self,
        conn: Connection,
        table: Table,
        model: type[RecordT],
        *conditions,
        for_update: bool = False,
    ) -> Optional[RecordT]:
        query = select(table.c.record_json).where(*conditions).limit(1)
        if for_update:
            query = self.persistence.locked(query)
        row = conn.execute(query).first()
        return model.model_validate(json.loads(row.record_json)) if row else None

    def _list(self, query, model: type[RecordT]) -> list[RecordT]:
        with self.persistence.transaction() as conn:
            rows = conn.execute(query).all()
        return [model.model_validate(json.loads(row.record_json)) for row in rows]

    @staticmethod
    def _row_values(table: Table, record: BaseModel) -> dict[str, Any]:
        # Every column except the JSON body mirrors a field of the record.
        values = {
            column.name: getattr(record, column.name)
            for column in table.columns
            if column.name != "record_json"
        }
        values["record_json"] = json.dumps(record.model_dump(mode="json"))
        return values

    def _insert(self, conn: Connection, table: Table, record: BaseModel) -> None:
        conn.execute(table.insert().values(**self._row_values(table, record)))

    def _update(self, conn: Connection, table: Table, record: BaseModel) -> None:
        conn.execute(
            table.update()
            .where(table.c.id == record.id)
            .values(**self._row_values(table, record))
        )
