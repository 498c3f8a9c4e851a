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
"""Defines the Pydantic data models for the application."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that serializes field names the way the dashboard expects them."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnomalyType(str, Enum):
    LAB = "lab"
    SYMPTOM = "symptom"
    ENROLLMENT = "enrollment"
    REFERENCE = "reference"
    FORMAT = "format"
    DUPLICATE = "duplicate"


class RecordKind(str, Enum):
    """Category label reported back for an upload."""

    ENROLLMENTS = "enrollments"
    MEDICATION_EVENTS = "medication-events"
    SYMPTOMS = "symptoms"
    LAB_RESULTS = "lab-results"


# Persisted entities


class Trial(CamelModel):
    id: str
    name: str
    start_date: datetime


class Patient(CamelModel):
    id: str
    trial_id: str
    enroll_date: datetime


class Symptom(CamelModel):
    id: str
    patient_id: str
    symptom: str
    severity: int
    reported_date: datetime


class LabResult(CamelModel):
    id: int
    patient_id: str
    test_type: str
    value: Decimal
    units: str
    result_date: datetime
    file_hash: str | None = Field(
        default=None, description="SHA-256 digest of the upload the result came from."
    )


class MedicationEvent(CamelModel):
    id: int
    patient_id: str
    medication: str = Field(..., description="Upper-case medication name.")
    dosage: str
    administered_date: datetime
    created_at: datetime


class UploadFingerprint(CamelModel):
    digest: str
    kind: RecordKind
    created_at: datetime


class Anomaly(CamelModel):
    """An outlier detected in a record, not yet logged.

    `reported_date` is when the clinical event happened. The structured
    `severity`, `value` and `units` fields repeat what `message` renders so
    consumers never need to parse the message back.
    """

    patient_id: str
    message: str
    type: AnomalyType
    reported_date: datetime
    severity: int | None = None
    value: Decimal | None = None
    units: str | None = None


class OutlierLog(Anomaly):
    """A logged anomaly. `created_at` is the detection time."""

    id: int
    created_at: datetime


# Parse-boundary record variants


class EnrollmentRecord(CamelModel):
    kind: Literal["enrollment"] = "enrollment"
    patient_id: str
    trial_id: str
    enroll_date: datetime
    enroll_date_raw: str


class MedicationRecord(CamelModel):
    kind: Literal["medication"] = "medication"
    patient_id: str
    medication: str = Field(..., description="Normalized upper-case name.")
    reported_name: str = Field(..., description="The name exactly as uploaded.")
    dosage: str
    administered_date: datetime
    administered_date_raw: str


class SymptomRecord(CamelModel):
    kind: Literal["symptom"] = "symptom"
    id: str
    patient_id: str
    symptom: str
    severity: int
    reported_date: datetime


class LabResultRecord(CamelModel):
    kind: Literal["lab_result"] = "lab_result"
    patient_id: str
    test_type: str
    value: Decimal
    units: str
    result_date: datetime


# Events and results


class OutlierEvent(BaseModel):
    type: Literal["outlier"] = "outlier"
    data: OutlierLog


class ConnectionEvent(BaseModel):
    type: Literal["connection"] = "connection"
    data: dict[str, Any]


class IngestionResult(BaseModel):
    """What the caller gets back for a successful upload."""

    count: int
    type: RecordKind
