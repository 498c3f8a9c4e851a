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
"""Per-record validation turning raw rows into typed records.

Format anomalies are dated with the record's own event date when it could be
read and with the detection time otherwise.
"""

import re
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from .exceptions import ReferenceNotFound, ValidationFailed
from .gateway.base import PersistenceGateway
from .models import (
    Anomaly,
    AnomalyType,
    EnrollmentRecord,
    LabResultRecord,
    MedicationRecord,
    Patient,
    SymptomRecord,
)
from .parser import RawRow

DOSAGE_PATTERN = re.compile(r"^\d+(\.\d+)?\s*(mg|ml|g|mcg)$", re.IGNORECASE)
SEVERITY_MIN = 0
SEVERITY_MAX = 10

# Attributed to anomalies raised for rows that carry no patient identifier.
UNKNOWN_PATIENT = "UNKNOWN"

UNKNOWN_MEDICATION_PATIENT = "Unknown patient in medication events"
UNKNOWN_SYMPTOM_PATIENT = "Patient not found in enrollment data for symptom record"
UNKNOWN_LAB_PATIENT = "Patient not found in enrollment data for lab result"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Reads an ISO 8601 date or date-time into an aware UTC datetime.

    Naive values are taken to be UTC. Returns None for anything unreadable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _text(fields: dict[str, Any], key: str) -> str:
    value = fields.get(key)
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"[+-]?\d+", value.strip()):
        return int(value.strip())
    return None


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def non_standard_name_anomaly(record: MedicationRecord) -> Anomaly | None:
    """Flags a medication name that had to be upper-cased before storing."""
    if record.reported_name == record.medication:
        return None
    return Anomaly(
        patient_id=record.patient_id,
        message=f"Non-standardized medication name: {record.reported_name}",
        type=AnomalyType.FORMAT,
        reported_date=record.administered_date,
    )


def duplicate_medication_anomaly(record: MedicationRecord) -> Anomaly:
    return Anomaly(
        patient_id=record.patient_id,
        message=(
            f"Duplicate medication event: {record.reported_name} "
            f"at {record.administered_date_raw}"
        ),
        type=AnomalyType.DUPLICATE,
        reported_date=record.administered_date,
    )


class RecordValidator:
    """Validates raw rows of each kind.

    Event rows naming a patient are checked against the enrolled patients
    before any other field, so an unknown patient always yields a single
    reference anomaly.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        default_trial_id: str = "T999",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.gateway = gateway
        self.default_trial_id = default_trial_id
        self.clock = clock

    def _reject(
        self, patient_id: str, message: str, reported_date: datetime | None = None
    ) -> ValidationFailed:
        return ValidationFailed(
            Anomaly(
                patient_id=patient_id or UNKNOWN_PATIENT,
                message=message,
                type=AnomalyType.FORMAT,
                reported_date=reported_date or self.clock(),
            )
        )

    def enrollment(self, row: RawRow) -> EnrollmentRecord:
        fields = row.fields
        patient_id = _text(fields, "patientId")
        if row.problem:
            raise self._reject(patient_id, row.problem)
        if not patient_id:
            raise self._reject(patient_id, f"Missing patientId in enrollment row at line {row.position}")

        raw_date = _text(fields, "enrollDate")
        enroll_date = parse_timestamp(raw_date)
        if enroll_date is None:
            raise self._reject(patient_id, f"Invalid enrollment date: {raw_date}")

        return EnrollmentRecord(
            patient_id=patient_id,
            trial_id=_text(fields, "trialId") or self.default_trial_id,
            enroll_date=enroll_date,
            enroll_date_raw=raw_date,
        )

    async def medication(self, row: RawRow) -> MedicationRecord:
        fields = row.fields
        patient_id = _text(fields, "patientCode")
        if row.problem:
            raise self._reject(patient_id, row.problem)
        if not patient_id:
            raise self._reject(
                patient_id, f"Missing patientCode in medication row at line {row.position}"
            )

        raw_date = _text(fields, "administeredDate")
        administered_date = parse_timestamp(raw_date)
        await self._check_reference(
            patient_id, f"{UNKNOWN_MEDICATION_PATIENT}: {patient_id}", administered_date
        )
        if administered_date is None:
            raise self._reject(patient_id, f"Invalid administered date: {raw_date}")

        name = _text(fields, "medication")
        if not name:
            raise self._reject(patient_id, "Missing or invalid medication name", administered_date)

        dosage = _text(fields, "dosage")
        if not DOSAGE_PATTERN.match(dosage):
            raise self._reject(patient_id, f"Invalid dosage format: {dosage}", administered_date)

        return MedicationRecord(
            patient_id=patient_id,
            medication=name.upper(),
            reported_name=name,
            dosage=dosage,
            administered_date=administered_date,
            administered_date_raw=raw_date,
        )

    async def symptom(self, row: RawRow) -> SymptomRecord:
        fields = row.fields
        patient_id = _text(fields, "patientId")
        raw_date = _text(fields, "reportedDate")
        reported_date = parse_timestamp(raw_date)
        await self._check_reference(patient_id, UNKNOWN_SYMPTOM_PATIENT, reported_date)
        if reported_date is None:
            raise self._reject(patient_id, f"Invalid reported date: {raw_date}")

        for key in ("id", "patientId", "symptom"):
            if not _text(fields, key):
                raise self._reject(
                    patient_id, f"Invalid symptom record: missing {key}", reported_date
                )

        raw_severity = fields.get("severity")
        severity = _as_int(raw_severity)
        if severity is None:
            raise self._reject(
                patient_id, f"Invalid symptom severity: {raw_severity}", reported_date
            )
        if not SEVERITY_MIN <= severity <= SEVERITY_MAX:
            raise self._reject(patient_id, f"Severity out of range: {severity}", reported_date)

        return SymptomRecord(
            id=_text(fields, "id"),
            patient_id=patient_id,
            symptom=_text(fields, "symptom"),
            severity=severity,
            reported_date=reported_date,
        )

    async def lab_result(self, row: RawRow) -> LabResultRecord:
        fields = row.fields
        patient_id = _text(fields, "patientId")
        raw_date = _text(fields, "resultDate")
        result_date = parse_timestamp(raw_date)
        await self._check_reference(patient_id, UNKNOWN_LAB_PATIENT, result_date)
        if result_date is None:
            raise self._reject(patient_id, f"Invalid result date: {raw_date}")

        for key in ("patientId", "testType", "units"):
            if not _text(fields, key):
                raise self._reject(patient_id, f"Invalid lab result: missing {key}", result_date)

        value = _as_decimal(fields.get("value"))
        if value is None:
            raise self._reject(
                patient_id, f"Invalid lab result value: {_text(fields, 'value')}", result_date
            )

        return LabResultRecord(
            patient_id=patient_id,
            test_type=_text(fields, "testType"),
            value=value,
            units=_text(fields, "units"),
            result_date=result_date,
        )

    async def _check_reference(
        self, patient_id: str, message: str, event_date: datetime | None
    ) -> None:
        # Rows without an identifier fall through to the field checks.
        if patient_id:
            await self.require_patient(patient_id, message, event_date or self.clock())

    async def require_patient(
        self, patient_id: str, message: str, reported_date: datetime
    ) -> Patient:
        """Returns the enrolled patient or raises a reference anomaly."""
        patient = await self.gateway.find_patient(patient_id)
        if patient is None:
            raise ReferenceNotFound(
                Anomaly(
                    patient_id=patient_id,
                    message=message,
                    type=AnomalyType.REFERENCE,
                    reported_date=reported_date,
                )
            )
        return patient
