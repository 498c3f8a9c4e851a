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

import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from py_ingest_trials.broadcaster import EventBroadcaster
from py_ingest_trials.exceptions import (
    DuplicateUpload,
    FormatUnrecognized,
    PersistenceFailure,
    StructuralParseFailure,
)
from py_ingest_trials.fingerprint import fingerprint
from py_ingest_trials.gateway.memory import InMemoryGateway
from py_ingest_trials.models import AnomalyType, IngestionResult, RecordKind
from py_ingest_trials.pipeline import (
    UNRECOGNIZED_FORMAT_MESSAGE,
    IngestionPipeline,
    IngestionRun,
    PipelineState,
)

pytestmark = pytest.mark.unit

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

ENROLLMENTS = """patientId,enrollDate,trialId
P001,2024-01-15,T001
P002,2024-02-01,
"""

MEDICATIONS = """patientCode,medication,dosage,administeredDate
P001,aspirin,100 mg,2024-03-01T08:00:00Z
P001,ASPIRIN,100 mg,2024-03-01T08:00:00Z
P999,ASPIRIN,100 mg,2024-03-01T08:00:00Z
P002,IBUPROFEN,10 tablets,2024-03-02
"""

SYMPTOMS = json.dumps(
    [
        {"id": "S1", "patientId": "P001", "symptom": "headache", "severity": 8, "reportedDate": "2024-03-02"},
        {"id": "S2", "patientId": "P001", "symptom": "nausea", "severity": 7, "reportedDate": "2024-03-03"},
        {"id": "S3", "patientId": "P404", "symptom": "fatigue", "severity": 2, "reportedDate": "2024-03-04"},
        {"id": "S4", "patientId": "P002", "symptom": "rash", "severity": 11, "reportedDate": "2024-03-05"},
    ]
)

LAB_RESULTS = """<LabResults>
  <Result>
    <patientId>P001</patientId>
    <testType>LDL</testType>
    <value>210</value>
    <units>mg/dL</units>
    <resultDate>2024-03-05</resultDate>
  </Result>
  <Result>
    <patientId>P002</patientId>
    <testType>LDL</testType>
    <value>199</value>
    <units>mg/dL</units>
    <resultDate>2024-03-05</resultDate>
  </Result>
</LabResults>
"""


class FlakyGateway(InMemoryGateway):
    """Fails to store one patient and, optionally, every outlier log."""

    def __init__(self, failing_patient: str, fail_logs: bool = False) -> None:
        super().__init__()
        self.failing_patient = failing_patient
        self.fail_logs = fail_logs

    async def insert_patient(self, record):
        if record.patient_id == self.failing_patient:
            msg = "connection reset"
            raise PersistenceFailure(msg)
        return await super().insert_patient(record)

    async def insert_outlier_log(self, anomaly):
        if self.fail_logs:
            msg = "connection reset"
            raise PersistenceFailure(msg)
        return await super().insert_outlier_log(anomaly)


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def pipeline(gateway: InMemoryGateway, broadcaster: EventBroadcaster) -> IngestionPipeline:
    return IngestionPipeline(gateway, broadcaster, clock=lambda: NOW)


def logs_of_type(gateway: InMemoryGateway, anomaly_type: AnomalyType):
    return [log for log in gateway.outlier_logs.values() if log.type is anomaly_type]


@pytest.mark.asyncio
async def test_enrollment_upload(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    """Tests that patients are stored and their trials created on demand."""
    run = IngestionRun()

    result = await pipeline.process(ENROLLMENTS, run)

    assert result == IngestionResult(count=2, type=RecordKind.ENROLLMENTS)
    assert run.state is PipelineState.COMPLETED
    assert run.stored == 2
    assert gateway.patients["P001"].trial_id == "T001"
    assert gateway.patients["P002"].trial_id == "T999"
    assert gateway.trials["T001"].name == "T001"
    assert gateway.trials["T999"].name == "Default Trial"
    assert gateway.outlier_logs == {}


@pytest.mark.asyncio
async def test_future_enrollment_is_stored_and_flagged(
    pipeline: IngestionPipeline, gateway: InMemoryGateway
):
    await pipeline.process("patientId,enrollDate\nP003,2025-01-01\n")

    assert "P003" in gateway.patients
    [log] = logs_of_type(gateway, AnomalyType.ENROLLMENT)
    assert log.message == "Future enrollment date detected: 2025-01-01"
    assert log.reported_date == datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_future_enrollment_message_keeps_uploaded_timestamp(
    pipeline: IngestionPipeline, gateway: InMemoryGateway
):
    await pipeline.process("patientId,enrollDate\nP1,2030-01-01T09:30:00Z\n")

    [log] = logs_of_type(gateway, AnomalyType.ENROLLMENT)
    assert log.message == "Future enrollment date detected: 2030-01-01T09:30:00Z"
    assert log.reported_date == datetime(2030, 1, 1, 9, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_duplicate_upload_adds_nothing(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    """Tests that byte-identical content is refused the second time."""
    await pipeline.process(ENROLLMENTS)
    patients_before = dict(gateway.patients)
    run = IngestionRun()

    with pytest.raises(DuplicateUpload) as excinfo:
        await pipeline.process(ENROLLMENTS, run)

    assert str(excinfo.value) == (
        "This file has already been processed. Skipping to prevent duplicates."
    )
    assert run.state is PipelineState.FAILED
    assert run.error is excinfo.value
    assert gateway.patients == patients_before


@pytest.mark.asyncio
async def test_unrecognized_format(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    with pytest.raises(FormatUnrecognized, match="Please upload CSV, JSON, or XML files only"):
        await pipeline.process("just some notes")

    assert str(FormatUnrecognized(UNRECOGNIZED_FORMAT_MESSAGE)).startswith("Invalid file format")
    assert gateway.fingerprints == {}


@pytest.mark.asyncio
async def test_structural_failure_does_not_consume_fingerprint(
    pipeline: IngestionPipeline, gateway: InMemoryGateway
):
    content = "<Results><Result><value>1</value></Result></Results>"

    with pytest.raises(StructuralParseFailure):
        await pipeline.process(content)
    with pytest.raises(StructuralParseFailure):
        await pipeline.process(content)

    assert gateway.fingerprints == {}


@pytest.mark.asyncio
async def test_medication_upload(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    """Tests normalization, duplicate events, unknown patients and bad dosages."""
    await pipeline.process(ENROLLMENTS)

    result = await pipeline.process(MEDICATIONS)

    assert result == IngestionResult(count=4, type=RecordKind.MEDICATION_EVENTS)
    assert [e.medication for e in gateway.medication_events.values()] == ["ASPIRIN"]

    [renamed] = logs_of_type(gateway, AnomalyType.FORMAT)[:1]
    assert renamed.message == "Non-standardized medication name: aspirin"

    [duplicate] = logs_of_type(gateway, AnomalyType.DUPLICATE)
    assert duplicate.message == "Duplicate medication event: ASPIRIN at 2024-03-01T08:00:00Z"

    [reference] = logs_of_type(gateway, AnomalyType.REFERENCE)
    assert reference.patient_id == "P999"
    assert reference.message == "Unknown patient in medication events: P999"
    assert reference.reported_date == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

    messages = {log.message for log in logs_of_type(gateway, AnomalyType.FORMAT)}
    assert "Invalid dosage format: 10 tablets" in messages


@pytest.mark.asyncio
async def test_symptom_upload(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    await pipeline.process(ENROLLMENTS)

    result = await pipeline.process(SYMPTOMS)

    assert result == IngestionResult(count=4, type=RecordKind.SYMPTOMS)
    assert set(gateway.symptoms) == {"S1", "S2"}

    [severe] = logs_of_type(gateway, AnomalyType.SYMPTOM)
    assert severe.message == "Symptom: Headache (severity 8)"
    assert severe.severity == 8

    [reference] = logs_of_type(gateway, AnomalyType.REFERENCE)
    assert reference.message == "Patient not found in enrollment data for symptom record"
    assert reference.reported_date == datetime(2024, 3, 4, tzinfo=timezone.utc)

    [out_of_range] = logs_of_type(gateway, AnomalyType.FORMAT)
    assert out_of_range.message == "Severity out of range: 11"
    assert out_of_range.patient_id == "P002"


@pytest.mark.asyncio
async def test_lab_upload(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    """Tests that every result is stored with the upload digest and only 210 is flagged."""
    await pipeline.process(ENROLLMENTS)

    result = await pipeline.process(LAB_RESULTS)

    assert result == IngestionResult(count=2, type=RecordKind.LAB_RESULTS)
    assert [r.value for r in gateway.lab_results] == [Decimal("210"), Decimal("199")]
    assert {r.file_hash for r in gateway.lab_results} == {fingerprint(LAB_RESULTS)}

    [abnormal] = logs_of_type(gateway, AnomalyType.LAB)
    assert abnormal.message == "Abnormal LDL: 210 mg/dL"
    assert abnormal.patient_id == "P001"


@pytest.mark.asyncio
async def test_repeated_anomaly_is_logged_and_broadcast_once(
    pipeline: IngestionPipeline, gateway: InMemoryGateway, broadcaster: EventBroadcaster
):
    """Tests that a second identical anomaly from another upload is suppressed."""
    await pipeline.process(ENROLLMENTS)
    subscription = broadcaster.subscribe()
    subscription.drain()
    first = [{"id": "S1", "patientId": "P001", "symptom": "headache", "severity": 9, "reportedDate": "2024-03-02"}]
    second = [{"id": "S9", "patientId": "P001", "symptom": "headache", "severity": 9, "reportedDate": "2024-03-02"}]

    await pipeline.process(json.dumps(first))
    await pipeline.process(json.dumps(second))

    assert len(logs_of_type(gateway, AnomalyType.SYMPTOM)) == 1
    events = [json.loads(p) for p in subscription.drain()]
    assert len(events) == 1
    assert events[0]["type"] == "outlier"
    assert events[0]["data"]["patientId"] == "P001"
    assert events[0]["data"]["message"] == "Symptom: Headache (severity 9)"


@pytest.mark.asyncio
async def test_concurrent_disjoint_uploads(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    first = "patientId,enrollDate\nP101,2024-01-01\nP102,2024-01-02\n"
    second = "patientId,enrollDate\nP201,2024-01-01\nP202,2024-01-02\n"

    results = await asyncio.gather(pipeline.process(first), pipeline.process(second))

    assert [r.count for r in results] == [2, 2]
    assert set(gateway.patients) == {"P101", "P102", "P201", "P202"}


@pytest.mark.asyncio
async def test_concurrent_identical_uploads(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    """Tests that exactly one of two simultaneous identical uploads succeeds."""
    results = await asyncio.gather(
        pipeline.process(ENROLLMENTS), pipeline.process(ENROLLMENTS), return_exceptions=True,
    )

    assert sum(isinstance(r, IngestionResult) for r in results) == 1
    assert sum(isinstance(r, DuplicateUpload) for r in results) == 1
    assert len(gateway.patients) == 2


@pytest.mark.asyncio
async def test_reenrolled_patient_is_skipped(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    await pipeline.process(ENROLLMENTS)
    run = IngestionRun()

    result = await pipeline.process("patientId,enrollDate,trialId\nP001,2024-05-05,T002\n", run)

    assert result.count == 1
    assert run.stored == 0
    assert gateway.patients["P001"].trial_id == "T001"


@pytest.mark.asyncio
async def test_persistence_failure_skips_only_that_record(broadcaster: EventBroadcaster):
    gateway = FlakyGateway(failing_patient="P002")
    pipeline = IngestionPipeline(gateway, broadcaster, clock=lambda: NOW)
    run = IngestionRun()

    result = await pipeline.process(
        "patientId,enrollDate\nP001,2024-01-01\nP002,2024-01-02\nP003,2024-01-03\n", run,
    )

    assert result.count == 3
    assert run.state is PipelineState.COMPLETED
    assert run.rejected == 1
    assert set(gateway.patients) == {"P001", "P003"}


@pytest.mark.asyncio
async def test_outlier_log_failure_is_not_fatal(broadcaster: EventBroadcaster):
    gateway = FlakyGateway(failing_patient="", fail_logs=True)
    pipeline = IngestionPipeline(gateway, broadcaster, clock=lambda: NOW)
    subscription = broadcaster.subscribe()
    subscription.drain()

    result = await pipeline.process("patientId,enrollDate\nP001,2030-01-01\n")

    assert result.count == 1
    assert "P001" in gateway.patients
    assert subscription.drain() == []


@pytest.mark.asyncio
async def test_lab_result_for_unknown_patient(pipeline: IngestionPipeline, gateway: InMemoryGateway):
    """Tests that the reference anomaly carries the result date, not the detection time."""
    content = LAB_RESULTS.replace("P002", "P404").replace(
        "<resultDate>2024-03-05</resultDate>\n  </Result>\n</LabResults>",
        "<resultDate>2024-03-07T10:15:00Z</resultDate>\n  </Result>\n</LabResults>",
    )
    await pipeline.process(ENROLLMENTS)

    await pipeline.process(content)

    assert [r.patient_id for r in gateway.lab_results] == ["P001"]
    [reference] = logs_of_type(gateway, AnomalyType.REFERENCE)
    assert reference.patient_id == "P404"
    assert reference.message == "Patient not found in enrollment data for lab result"
    assert reference.reported_date == datetime(2024, 3, 7, 10, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    [
        json.dumps(
            [{"id": "S7", "patientId": "P404", "symptom": "fatigue", "severity": 12, "reportedDate": "2024-03-04"}]
        ),
        "<LabResults><Result><patientId>P404</patientId><testType>LDL</testType>"
        "<value>210</value><resultDate>2024-03-05</resultDate></Result></LabResults>",
        "patientCode,medication,dosage,administeredDate\nP999,aspirin,10 tablets,2024-03-01\n",
    ],
    ids=["symptom", "lab_result", "medication"],
)
async def test_unknown_patient_yields_only_reference_anomaly(
    pipeline: IngestionPipeline, gateway: InMemoryGateway, content: str
):
    """Tests that other defects in a row for an unknown patient are not reported."""
    await pipeline.process(ENROLLMENTS)

    await pipeline.process(content)

    assert [log.type for log in gateway.outlier_logs.values()] == [AnomalyType.REFERENCE]
