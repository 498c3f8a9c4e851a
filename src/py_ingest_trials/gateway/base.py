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
"""Defines the abstract base class for persistence gateways."""

import abc
import types
from datetime import datetime

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


class PersistenceGateway(abc.ABC):
    """Abstract Base Class for the stores the pipeline persists into.

    Every method must be safe to call from concurrent pipeline invocations.
    Uniqueness (fingerprints, medication events, anomaly tuples) is enforced
    by the store itself: inserts that would break it return None instead of
    raising. Backend errors surface as `PersistenceFailure`.
    """

    @abc.abstractmethod
    async def __aenter__(self) -> "PersistenceGateway":
        """Open the connection to the store.

        Returns:
            The gateway instance.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        """Close the connection to the store."""
        raise NotImplementedError

    @abc.abstractmethod
    async def find_patient(self, patient_id: str) -> Patient | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def find_trial(self, trial_id: str) -> Trial | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_trial(self, trial_id: str, name: str, start_date: datetime) -> Trial | None:
        """Create a trial. Returns None if one with this id already exists."""
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_patient(self, record: EnrollmentRecord) -> Patient | None:
        """Enroll a patient. Returns None if the patient is already enrolled."""
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_symptom(self, record: SymptomRecord) -> Symptom | None:
        """Store a symptom. Returns None if the symptom id is already stored."""
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_lab_result(self, record: LabResultRecord, file_hash: str) -> LabResult:
        """Store a lab result tagged with the fingerprint of its upload."""
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_medication_event(self, record: MedicationRecord) -> MedicationEvent | None:
        """Store a medication event.

        Returns None if an event with the same patient, medication and
        administered date is already stored.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_outlier_log(self, anomaly: Anomaly) -> tuple[OutlierLog, bool]:
        """Atomically log an anomaly unless an identical one is already logged.

        Identity is the (patient_id, message, type, reported_date) tuple.

        Returns:
            The stored log and whether this call created it.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def find_outlier_log_by_tuple(
        self,
        patient_id: str,
        message: str,
        anomaly_type: AnomalyType,
        reported_date: datetime,
    ) -> OutlierLog | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def find_fingerprint(self, digest: str) -> UploadFingerprint | None:
        raise NotImplementedError

    @abc.abstractmethod
    async def insert_fingerprint(self, digest: str, kind: RecordKind) -> UploadFingerprint | None:
        """Record an upload fingerprint. Returns None if it was already recorded."""
        raise NotImplementedError

    @abc.abstractmethod
    async def count_patients(self) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    async def average_symptom_severity(self) -> float:
        """Mean severity over all symptoms, 0.0 when there are none."""
        raise NotImplementedError

    @abc.abstractmethod
    async def count_outlier_logs(self) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    async def recent_outliers(self, limit: int) -> list[OutlierLog]:
        """The most recently detected anomalies, newest first."""
        raise NotImplementedError

    @abc.abstractmethod
    async def list_outliers(self, limit: int = 50) -> list[OutlierLog]:
        """Anomalies ordered by when the underlying event happened, newest first."""
        raise NotImplementedError
