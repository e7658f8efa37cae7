"""
SQLite-backed record store for dictations and structured notes
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiosqlite

from dictation_service.core.errors import AlreadyExtractedError, RecordStoreError
from dictation_service.core.logging import get_logger
from dictation_service.models.dictation import (
    Dictation,
    DictationStatus,
    ExtractionState,
    StructuredNote,
)

logger = get_logger(__name__)

INIT_SQL = """
CREATE TABLE IF NOT EXISTS dictations(
  id TEXT PRIMARY KEY,
  clinician_id TEXT NOT NULL,
  patient_id TEXT,
  storage_path TEXT NOT NULL,
  content_type TEXT NOT NULL,
  duration_sec INTEGER NOT NULL DEFAULT 0,
  vendor TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('processing', 'done', 'failed')),
  transcript TEXT,
  transcript_text TEXT,
  error TEXT,
  extraction_state TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_dictations_clinician ON dictations(clinician_id, created_at);
CREATE TABLE IF NOT EXISTS dictation_outputs(
  id TEXT PRIMARY KEY,
  dictation_id TEXT NOT NULL UNIQUE REFERENCES dictations(id) ON DELETE CASCADE,
  model TEXT NOT NULL,
  result TEXT NOT NULL,
  created_at TEXT NOT NULL
);
"""

# Columns a status transition is allowed to write
_TRANSITION_COLUMNS = ("transcript", "transcript_text", "error")


def _row_to_dictation(row: aiosqlite.Row) -> Dictation:
    return Dictation(
        id=row["id"],
        clinician_id=row["clinician_id"],
        patient_id=row["patient_id"],
        storage_path=row["storage_path"],
        content_type=row["content_type"],
        duration_sec=row["duration_sec"],
        vendor=row["vendor"],
        status=DictationStatus(row["status"]),
        transcript=json.loads(row["transcript"]) if row["transcript"] else None,
        transcript_text=row["transcript_text"],
        error=row["error"],
        extraction_state=ExtractionState(row["extraction_state"]) if row["extraction_state"] else None,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_note(row: aiosqlite.Row) -> StructuredNote:
    return StructuredNote(
        id=row["id"],
        dictation_id=row["dictation_id"],
        model=row["model"],
        result=json.loads(row["result"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SQLiteRecordStore:
    """Record store on aiosqlite; one short-lived connection per operation."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self):
        return aiosqlite.connect(self.db_path)

    async def init(self) -> None:
        try:
            async with self._connect() as db:
                await db.executescript(INIT_SQL)
                await db.commit()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to initialise record store: {e}")
        logger.info(f"Record store ready at {self.db_path}")

    async def ping(self) -> bool:
        try:
            async with self._connect() as db:
                await db.execute("SELECT 1")
            return True
        except aiosqlite.Error as e:
            logger.warning(f"Record store ping failed: {e}")
            return False

    async def insert(self, dictation: Dictation) -> None:
        try:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO dictations(id, clinician_id, patient_id, storage_path, content_type,"
                    " duration_sec, vendor, status, transcript, transcript_text, error, extraction_state,"
                    " created_at, updated_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        dictation.id,
                        dictation.clinician_id,
                        dictation.patient_id,
                        dictation.storage_path,
                        dictation.content_type,
                        dictation.duration_sec,
                        dictation.vendor,
                        dictation.status.value,
                        json.dumps(dictation.transcript) if dictation.transcript is not None else None,
                        dictation.transcript_text,
                        dictation.error,
                        dictation.extraction_state.value if dictation.extraction_state else None,
                        dictation.created_at.isoformat(),
                        dictation.updated_at.isoformat(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to create dictation record: {e}")

    async def update_status(
        self,
        dictation_id: str,
        status: DictationStatus,
        fields: Dict[str, Any],
        expected_status: DictationStatus = DictationStatus.PROCESSING,
    ) -> bool:
        """
        Moves a dictation to ``status`` only if it is currently ``expected_status``.

        The check and the write are one UPDATE statement, so two writers can
        never both succeed. Returns False when the precondition did not hold.
        """
        unknown = set(fields) - set(_TRANSITION_COLUMNS)
        if unknown:
            raise ValueError(f"Unexpected transition columns: {sorted(unknown)}")

        values = dict(fields)
        if "transcript" in values and values["transcript"] is not None:
            values["transcript"] = json.dumps(values["transcript"])

        assignments = ", ".join(f"{column} = ?" for column in values)
        sql = "UPDATE dictations SET status = ?, updated_at = ?"
        if assignments:
            sql += ", " + assignments
        sql += " WHERE id = ? AND status = ?"
        params = [status.value, datetime.utcnow().isoformat(), *values.values(), dictation_id, expected_status.value]

        try:
            async with self._connect() as db:
                cursor = await db.execute(sql, params)
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to update dictation {dictation_id}: {e}")

    async def get(self, dictation_id: str) -> Optional[Dictation]:
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT * FROM dictations WHERE id = ?", (dictation_id,))
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to load dictation {dictation_id}: {e}")
        return _row_to_dictation(row) if row else None

    async def list_for_clinician(self, clinician_id: str, limit: int) -> List[Dictation]:
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM dictations WHERE clinician_id = ? ORDER BY created_at DESC LIMIT ?",
                    (clinician_id, limit),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to list dictations: {e}")
        return [_row_to_dictation(row) for row in rows]

    async def claim_extraction(self, dictation_id: str) -> bool:
        """Atomically marks a finished, not yet extracted dictation as being extracted."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "UPDATE dictations SET extraction_state = ?"
                    " WHERE id = ? AND status = ? AND extraction_state IS NULL",
                    (ExtractionState.IN_PROGRESS.value, dictation_id, DictationStatus.DONE.value),
                )
                await db.commit()
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to claim extraction for {dictation_id}: {e}")

    async def release_extraction(self, dictation_id: str) -> None:
        try:
            async with self._connect() as db:
                await db.execute(
                    "UPDATE dictations SET extraction_state = NULL WHERE id = ? AND extraction_state = ?",
                    (dictation_id, ExtractionState.IN_PROGRESS.value),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to release extraction for {dictation_id}: {e}")

    async def insert_note(self, note: StructuredNote) -> None:
        """Persists the note and marks its dictation as extracted in one transaction."""
        try:
            async with self._connect() as db:
                await db.execute(
                    "INSERT INTO dictation_outputs(id, dictation_id, model, result, created_at)"
                    " VALUES(?,?,?,?,?)",
                    (note.id, note.dictation_id, note.model, json.dumps(note.result), note.created_at.isoformat()),
                )
                await db.execute(
                    "UPDATE dictations SET extraction_state = ? WHERE id = ?",
                    (ExtractionState.EXTRACTED.value, note.dictation_id),
                )
                await db.commit()
        except aiosqlite.IntegrityError:
            raise AlreadyExtractedError()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to save structured note: {e}")

    async def list_notes(self, dictation_id: str) -> List[StructuredNote]:
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM dictation_outputs WHERE dictation_id = ? ORDER BY created_at",
                    (dictation_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise RecordStoreError(f"Failed to list notes for {dictation_id}: {e}")
        return [_row_to_note(row) for row in rows]
