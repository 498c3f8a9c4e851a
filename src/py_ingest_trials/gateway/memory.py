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
"""An in-process gateway with the same uniqueness rules as the database."""

import itertools
import types
from datetime import datetime, timezone

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


class InMemoryGateway(PersistenceGateway):
    """Keeps every entity in dictionaries keyed by their unique constraints.

    No method awaits between its check and its write, so each call is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self.trials: dict[str, Trial] = {}
        self.patients: dict[str, Patient] = {}
        self.symptoms: dict[str, Symptom] = {}
        self.lab_results: list[LabResult] = []
        self.medication_events: dict[tuple[str, str, datetime], MedicationEvent] = {}
        self.outlier_logs: dict[tuple[str, str, AnomalyType, datetime], OutlierLog] = {}
        self.fingerprints: dict[str, UploadFingerprint] = {}
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "InMemoryGateway":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        return None

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def find_patient(self, patient_id: str) -> Patient | None:
        return self.patients.get(patient_id)

    async def find_trial(self, trial_id: str) -> Trial | None:
        return self.trials.get(trial_id)

    async def insert_trial(self, trial_id: str, name: str, start_date: datetime) -> Trial | None:
        if trial_id in self.trials:
            return None
        trial = Trial(id=trial_id, name=name, start_date=start_date)
        self.trials[trial_id] = trial
        return trial

    async def insert_patient(self, record: EnrollmentRecord) -> Patient | None:
        if record.patient_id in self.patients:
            return None
        patient = Patient(
            id=record.patient_id, trial_id=record.trial_id, enroll_date=record.enroll_date,
        )
        self.patients[patient.id] = patient
        return patient

    async def insert_symptom(self, record: SymptomRecord) -> Symptom | None:
        if record.id in self.symptoms:
            return None
        symptom = Symptom(
            id=record.id,
            patient_id=record.patient_id,
            symptom=record.symptom,
            severity=record.severity,
            reported_date=record.reported_date,
        )
        self.symptoms[symptom.id] = symptom
        return symptom

    async def insert_lab_result(self, record: LabResultRecord, file_hash: str) -> LabResult:
        result = LabResult(
            id=next(self._ids),
            patient_id=record.patient_id,
            test_type=record.test_type,
            value=record.value,
            units=record.units,
            result_date=record.result_date,
            file_hash=file_hash,
        )
        self.lab_results.append(result)
        return result

    async def insert_medication_event(self, record: MedicationRecord) -> MedicationEvent | None:
        key = (record.patient_id, record.medication, record.administered_date)
        if key in self.medication_events:
            return None
        event = MedicationEvent(
            id=next(self._ids),
            patient_id=record.patient_id,
            medication=record.medication,
            dosage=record.dosage,
            administered_date=record.administered_date,
            created_at=self._now(),
        )
        self.medication_events[key] = event
        return event

    async def insert_outlier_log(self, anomaly: Anomaly) -> tuple[OutlierLog, bool]:
        key = (anomaly.patient_id, anomaly.message, anomaly.type, anomaly.reported_date)
        existing = self.outlier_logs.get(key)
        if existing is not None:
            return existing, False
        log = OutlierLog(
            **anomaly.model_dump(), id=next(self._ids), created_at=self._now(),
        )
        self.outlier_logs[key] = log
        return log, True

    async def find_outlier_log_by_tuple(
        self,
        patient_id: str,
        message: str,
        anomaly_type: AnomalyType,
        reported_date: datetime,
    ) -> OutlierLog | None:
        return self.outlier_logs.get((patient_id, message, anomaly_type, reported_date))

    async def find_fingerprint(self, digest: str) -> UploadFingerprint | None:
        return self.fingerprints.get(digest)

    async def insert_fingerprint(self, digest: str, kind: RecordKind) -> UploadFingerprint | None:
        if digest in self.fingerprints:
            return None
        fingerprint = UploadFingerprint(digest=digest, kind=kind, created_at=self._now())
        self.fingerprints[digest] = fingerprint
        return fingerprint

    async def count_patients(self) -> int:
        return len(self.patients)

    async def average_symptom_severity(self) -> float:
        if not self.symptoms:
            return 0.0
        return sum(s.severity for s in self.symptoms.values()) / len(self.symptoms)

    async def count_outlier_logs(self) -> int:
        return len(self.outlier_logs)

    async def recent_outliers(self, limit: int) -> list[OutlierLog]:
        logs = sorted(self.outlier_logs.values(), key=lambda o: (o.created_at, o.id), reverse=True)
        return logs[:limit]

    async def list_outliers(self, limit: int = 50) -> list[OutlierLog]:
        logs = sorted(
            self.outlier_logs.values(), key=lambda o: (o.reported_date, o.id), reverse=True,
        )
        return logs[:limit]
