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
"""Orchestrates detection, deduplication, parsing and per-record processing."""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from .broadcaster import EventBroadcaster
from .detector import ContentFormat, detect
from .exceptions import (
    DuplicateRecord,
    DuplicateUpload,
    FormatUnrecognized,
    IngestionError,
    PersistenceFailure,
    RecordRejected,
)
from .fingerprint import DUPLICATE_UPLOAD_MESSAGE, DuplicateGuard, fingerprint
from .gateway.base import PersistenceGateway
from .models import (
    Anomaly,
    IngestionResult,
    OutlierEvent,
    OutlierLog,
    RecordKind,
)
from .outliers import evaluate, evaluate_enrollment
from .parser import ParsedUpload, RawRow, parse
from .validation import (
    RecordValidator,
    duplicate_medication_anomaly,
    non_standard_name_anomaly,
    utc_now,
)

logger = logging.getLogger(__name__)

UNRECOGNIZED_FORMAT_MESSAGE = (
    "Invalid file format. Please upload CSV, JSON, or XML files only."
)


class PipelineState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    DEDUPLICATING = "deduplicating"
    PARSING = "parsing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IngestionRun:
    """State of a single upload moving through the pipeline."""

    def __init__(self) -> None:
        self.run_id = str(uuid.uuid4())
        self.state = PipelineState.IDLE
        self.content_format: ContentFormat | None = None
        self.digest: str | None = None
        self.error: IngestionError | None = None
        self.stored = 0
        self.rejected = 0

    def transition(self, state: PipelineState) -> None:
        logger.debug("Run %s: %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state


class IngestionPipeline:
    """Ingests one raw upload at a time; separate calls may run concurrently.

    Fatal errors (unrecognized format, duplicate upload, structural parse
    failure) propagate to the caller. Anything wrong with a single record is
    logged as an anomaly or to the operational log, and processing continues.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        broadcaster: EventBroadcaster,
        default_trial_id: str = "T999",
        default_trial_name: str = "Default Trial",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.gateway = gateway
        self.broadcaster = broadcaster
        self.default_trial_id = default_trial_id
        self.default_trial_name = default_trial_name
        self.clock = clock
        self.guard = DuplicateGuard(gateway)
        self.validator = RecordValidator(gateway, default_trial_id, clock)

    async def process(self, content: str, run: IngestionRun | None = None) -> IngestionResult:
        """Ingest raw upload content.

        Args:
            content: The uploaded text, in any of the supported shapes.
            run: Optional state holder, for callers that want to observe the
                 run after it finishes.

        Returns:
            The number of records in the upload and their category.

        Raises:
            FormatUnrecognized: If the content shape cannot be identified.
            DuplicateUpload: If identical content was ingested before.
            StructuralParseFailure: If the content cannot be decoded.
        """
        run = run or IngestionRun()
        try:
            result = await self._run(content, run)
        except IngestionError as e:
            run.error = e
            run.transition(PipelineState.FAILED)
            logger.warning("Upload %s rejected: %s", run.run_id, e)
            raise
        run.transition(PipelineState.COMPLETED)
        logger.info(
            "Upload %s processed %d %s (%d stored, %d rejected).",
            run.run_id,
            result.count,
            result.type.value,
            run.stored,
            run.rejected,
        )
        return result

    async def _run(self, content: str, run: IngestionRun) -> IngestionResult:
        run.transition(PipelineState.DETECTING)
        run.content_format = detect(content)
        if run.content_format is ContentFormat.NONE:
            raise FormatUnrecognized(UNRECOGNIZED_FORMAT_MESSAGE)

        run.transition(PipelineState.DEDUPLICATING)
        run.digest = fingerprint(content)
        if await self.guard.is_duplicate(run.digest):
            raise DuplicateUpload(DUPLICATE_UPLOAD_MESSAGE)

        run.transition(PipelineState.PARSING)
        upload = parse(content, run.content_format)
        await self.guard.claim(run.digest, upload.kind)

        run.transition(PipelineState.PROCESSING)
        await self._process_rows(upload, run)
        return IngestionResult(count=len(upload.rows), type=upload.kind)

    async def _process_rows(self, upload: ParsedUpload, run: IngestionRun) -> None:
        handlers = {
            RecordKind.ENROLLMENTS: self._ingest_enrollment,
            RecordKind.MEDICATION_EVENTS: self._ingest_medication,
            RecordKind.SYMPTOMS: self._ingest_symptom,
            RecordKind.LAB_RESULTS: self._ingest_lab_result,
        }
        handler = handlers[upload.kind]
        # Rows run one at a time, in upload order.
        for row in upload.rows:
            try:
                stored = await handler(row, run)
            except RecordRejected as e:
                run.rejected += 1
                logger.debug("Row %d rejected: %s", row.position, e)
                await self.log_anomaly(e.anomaly)
            except PersistenceFailure as e:
                run.rejected += 1
                logger.error(
                    "Could not store %s row %d: %s", upload.kind.value, row.position, e,
                )
            else:
                if stored:
                    run.stored += 1

    async def log_anomaly(self, anomaly: Anomaly) -> OutlierLog | None:
        """Persist an anomaly and broadcast it if it was not logged before.

        Returns:
            The new or already existing log, or None if it could not be stored.
        """
        try:
            log, created = await self.gateway.insert_outlier_log(anomaly)
        except PersistenceFailure as e:
            logger.error("Error logging outlier for patient %s: %s", anomaly.patient_id, e)
            return None
        if created:
            self.broadcaster.broadcast(OutlierEvent(data=log))
        return log

    async def _ensure_trial(self, trial_id: str) -> None:
        if await self.gateway.find_trial(trial_id) is not None:
            return
        name = self.default_trial_name if trial_id == self.default_trial_id else trial_id
        await self.gateway.insert_trial(trial_id, name, self.clock())

    async def _ingest_enrollment(self, row: RawRow, run: IngestionRun) -> bool:
        record = self.validator.enrollment(row)
        await self._ensure_trial(record.trial_id)
        patient = await self.gateway.insert_patient(record)
        if patient is None:
            logger.warning("Patient %s is already enrolled; skipping.", record.patient_id)
            return False
        anomaly = evaluate_enrollment(patient, self.clock(), record.enroll_date_raw)
        if anomaly:
            await self.log_anomaly(anomaly)
        return True

    async def _ingest_medication(self, row: RawRow, run: IngestionRun) -> bool:
        record = await self.validator.medication(row)
        event = await self.gateway.insert_medication_event(record)
        if event is None:
            raise DuplicateRecord(duplicate_medication_anomaly(record))
        anomaly = non_standard_name_anomaly(record)
        if anomaly:
            await self.log_anomaly(anomaly)
        return True

    async def _ingest_symptom(self, row: RawRow, run: IngestionRun) -> bool:
        record = await self.validator.symptom(row)
        symptom = await self.gateway.insert_symptom(record)
        if symptom is None:
            logger.warning("Symptom %s is already stored; skipping.", record.id)
            return False
        anomaly = evaluate(symptom)
        if anomaly:
            await self.log_anomaly(anomaly)
        return True

    async def _ingest_lab_result(self, row: RawRow, run: IngestionRun) -> bool:
        record = await self.validator.lab_result(row)
        result = await self.gateway.insert_lab_result(record, run.digest or "")
        anomaly = evaluate(result)
        if anomaly:
            await self.log_anomaly(anomaly)
        return True
