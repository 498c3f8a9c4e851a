# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Provides a PostgreSQL persistence gateway built on psycopg's async API."""

import re
import types
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg
from jinja2 import Environment, FileSystemLoader
from psycopg import sql
from psycopg.rows import dict_row

from ..exceptions import PersistenceFailure
from ..models import (
    Anomaly,
    AnomalyType,
    EnrollmentRecord,
    LabResult,
    LabResultRecord,
    MedicationEvent,
    MedicationRecord,
    OutlierLog,
    Patient,
    RecordKind,
    Symptom,
    SymptomRecord,
    Trial,
    UploadFingerprint,
)
from .base import PersistenceGateway

SQL_DIR = Path(__file__).resolve().parent.parent / "sql"
SCHEMA_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

OUTLIER_COLUMNS = (
    "id, patient_id, message, type, created_at, reported_date, severity, value, units"
)


class PostgresGateway(PersistenceGateway):
    """A persistence gateway for PostgreSQL.

    The connection runs in autocommit mode: every statement commits on its
    own, so records stored before a failure stay stored. Uniqueness is left
    to the table constraints through `ON CONFLICT DO NOTHING`.
    """

    def __init__(self, conn_string: str, schema: str = "public") -> None:
        """Initialize the gateway with the database connection string.

        Args:
            conn_string: A libpq connection string. Put `connect_timeout` and a
                         `statement_timeout` option in it to bound every call.
            schema: The schema holding the trial tables.

        """
        if not SCHEMA_PATTERN.fullmatch(schema):
            msg = f"Invalid schema name: {schema!r}"
            raise ValueError(msg)
        self.conn_string = conn_string
        self.schema = schema
        self.conn: psycopg.AsyncConnection | None = None
        self.jinja_env = Environment(
            loader=FileSystemLoader(SQL_DIR),
            autoescape=False,  # SQL is not HTML
        )

    async def __aenter__(self) -> "PostgresGateway":
        """Open an autocommit connection returning rows as dictionaries."""
        try:
            self.conn = await psycopg.AsyncConnection.connect(
                self.conn_string, autocommit=True, row_factory=dict_row,
            )
        except psycopg.Error as e:
            msg = f"Could not connect to the database: {e}"
            raise PersistenceFailure(msg) from e
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Close the connection."""
        if not self.conn:
            return
        try:
            await self.conn.close()
        finally:
            self.conn = None

    def _table(self, name: str) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self.schema), sql.Identifier(name))

    async def execute_sql(
        self,
        query: sql.Composable | str,
        params: Iterable[Any] | None = None,
        fetch: str | None = None,
    ) -> Any:
        """Execute a SQL command, optionally fetching "one" or "all" rows."""
        if not self.conn:
            msg = (
                "Connection is not available. "
                "The gateway must be used as an async context manager."
            )
            raise RuntimeError(msg)

        try:
            async with self.conn.cursor() as cur:
                await cur.execute(query, params)
                if fetch == "one":
                    return await cur.fetchone()
                if fetch == "all":
                    return await cur.fetchall()
                return None
        except psycopg.Error as e:
            msg = f"Database request failed: {e}"
            raise PersistenceFailure(msg) from e

    async def prepare_schema(self) -> None:
        """Create the schema and tables if they do not exist yet."""
        template = self.jinja_env.get_template("create_tables.sql")
        await self.execute_sql(template.render(schema=self.schema))

    async def drop_tables(self) -> None:
        """Drop every table in the schema, discarding all stored data."""
        template = self.jinja_env.get_template("drop_tables.sql")
        await self.execute_sql(template.render(schema=self.schema))

    async def find_patient(self, patient_id: str) -> Patient | None:
        query = sql.SQL("SELECT id, trial_id, enroll_date FROM {} WHERE id = %s").format(
            self._table("patients"),
        )
        row = await self.execute_sql(query, (patient_id,), fetch="one")
        return Patient.model_validate(row) if row else None

    async def find_trial(self, trial_id: str) -> Trial | None:
        query = sql.SQL("SELECT id, name, start_date FROM {} WHERE id = %s").format(
            self._table("trials"),
        )
        row = await self.execute_sql(query, (trial_id,), fetch="one")
        return Trial.model_validate(row) if row else None

    async def insert_trial(self, trial_id: str, name: str, start_date: datetime) -> Trial | None:
        query = sql.SQL(
            "INSERT INTO {} (id, name, start_date) VALUES (%s, %s, %s) "
            "ON CONFLICT (id) DO NOTHING RETURNING id, name, start_date",
        ).format(self._table("trials"))
        row = await self.execute_sql(query, (trial_id, name, start_date), fetch="one")
        return Trial.model_validate(row) if row else None

    async def insert_patient(self, record: EnrollmentRecord) -> Patient | None:
        query = sql.SQL(
            "INSERT INTO {} (id, trial_id, enroll_date) VALUES (%s, %s, %s) "
            "ON CONFLICT (id) DO NOTHING RETURNING id, trial_id, enroll_date",
        ).format(self._table("patients"))
        row = await self.execute_sql(
            query, (record.patient_id, record.trial_id, record.enroll_date), fetch="one",
        )
        return Patient.model_validate(row) if row else None

    async def insert_symptom(self, record: SymptomRecord) -> Symptom | None:
        query = sql.SQL(
            "INSERT INTO {} (id, patient_id, symptom, severity, reported_date) "
            "VALUES (%s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING "
            "RETURNING id, patient_id, symptom, severity, reported_date",
        ).format(self._table("symptoms"))
        row = await self.execute_sql(
            query,
            (
                record.id,
                record.patient_id,
                record.symptom,
                record.severity,
                record.reported_date,
            ),
            fetch="one",
        )
        return Symptom.model_validate(row) if row else None

    async def insert_lab_result(self, record: LabResultRecord, file_hash: str) -> LabResult:
        query = sql.SQL(
            "INSERT INTO {} (patient_id, test_type, value, units, result_date, file_hash) "
            "VALUES (%s, %s, %s, %s, %s, %s) "
            "RETURNING id, patient_id, test_type, value, units, result_date, file_hash",
        ).format(self._table("lab_results"))
        row = await self.execute_sql(
            query,
            (
                record.patient_id,
                record.test_type,
                record.value,
                record.units,
                record.result_date,
                file_hash,
            ),
            fetch="one",
        )
        return LabResult.model_validate(row)

    async def insert_medication_event(self, record: MedicationRecord) -> MedicationEvent | None:
        query = sql.SQL(
            "INSERT INTO {} (patient_id, medication, dosage, administered_date) "
            "VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (patient_id, medication, administered_date) DO NOTHING "
            "RETURNING id, patient_id, medication, dosage, administered_date, created_at",
        ).format(self._table("medication_events"))
        row = await self.execute_sql(
            query,
            (record.patient_id, record.medication, record.dosage, record.administered_date),
            fetch="one",
        )
        return MedicationEvent.model_validate(row) if row else None

    async def insert_outlier_log(self, anomaly: Anomaly) -> tuple[OutlierLog, bool]:
        query = sql.SQL(
            "INSERT INTO {} (patient_id, message, type, reported_date, severity, value, units) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s) "
            "ON CONFLICT (patient_id, message, type, reported_date) DO NOTHING "
            "RETURNING " + OUTLIER_COLUMNS,
        ).format(self._table("outlier_logs"))
        row = await self.execute_sql(
            query,
            (
                anomaly.patient_id,
                anomaly.message,
                anomaly.type.value,
                anomaly.reported_date,
                anomaly.severity,
                anomaly.value,
                anomaly.units,
            ),
            fetch="one",
        )
        if row:
            return OutlierLog.model_validate(row), True

        existing = await self.find_outlier_log_by_tuple(
            anomaly.patient_id, anomaly.message, anomaly.type, anomaly.reported_date,
        )
        if existing is None:
            msg = f"Outlier log for patient {anomaly.patient_id} conflicted but was not found."
            raise PersistenceFailure(msg)
        return existing, False

    async def find_outlier_log_by_tuple(
        self,
        patient_id: str,
        message: str,
        anomaly_type: AnomalyType,
        reported_date: datetime,
    ) -> OutlierLog | None:
        query = sql.SQL(
            "SELECT " + OUTLIER_COLUMNS + " FROM {} "
            "WHERE patient_id = %s AND message = %s AND type = %s AND reported_date = %s",
        ).format(self._table("outlier_logs"))
        row = await self.execute_sql(
            query, (patient_id, message, anomaly_type.value, reported_date), fetch="one",
        )
        return OutlierLog.model_validate(row) if row else None

    async def find_fingerprint(self, digest: str) -> UploadFingerprint | None:
        query = sql.SQL("SELECT digest, kind, created_at FROM {} WHERE digest = %s").format(
            self._table("upload_fingerprints"),
        )
        row = await self.execute_sql(query, (digest,), fetch="one")
        return UploadFingerprint.model_validate(row) if row else None

    async def insert_fingerprint(self, digest: str, kind: RecordKind) -> UploadFingerprint | None:
        query = sql.SQL(
            "INSERT INTO {} (digest, kind) VALUES (%s, %s) "
            "ON CONFLICT (digest) DO NOTHING RETURNING digest, kind, created_at",
        ).format(self._table("upload_fingerprints"))
        row = await self.execute_sql(query, (digest, kind.value), fetch="one")
        return UploadFingerprint.model_validate(row) if row else None

    async def _scalar(self, query: sql.Composable) -> Any:
        row = await self.execute_sql(query, fetch="one")
        return row["value"] if row else None

    async def count_patients(self) -> int:
        query = sql.SQL("SELECT count(*) AS value FROM {}").format(self._table("patients"))
        return int(await self._scalar(query) or 0)

    async def average_symptom_severity(self) -> float:
        query = sql.SQL("SELECT avg(severity) AS value FROM {}").format(self._table("symptoms"))
        return float(await self._scalar(query) or 0)

    async def count_outlier_logs(self) -> int:
        query = sql.SQL("SELECT count(*) AS value FROM {}").format(self._table("outlier_logs"))
        return int(await self._scalar(query) or 0)

    async def recent_outliers(self, limit: int) -> list[OutlierLog]:
        query = sql.SQL(
            "SELECT " + OUTLIER_COLUMNS + " FROM {} ORDER BY created_at DESC, id DESC LIMIT %s",
        ).format(self._table("outlier_logs"))
        rows = await self.execute_sql(query, (limit,), fetch="all")
        return [OutlierLog.model_validate(row) for row in rows]

    async def list_outliers(self, limit: int = 50) -> list[OutlierLog]:
        query = sql.SQL(
            "SELECT " + OUTLIER_COLUMNS + " FROM {} ORDER BY reported_date DESC, id DESC LIMIT %s",
        ).format(self._table("outlier_logs"))
        rows = await self.execute_sql(query, (limit,), fetch="all")
        return [OutlierLog.model_validate(row) for row in rows]
