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
"""Clinical thresholds and the anomalies they produce for stored records.

The rendered messages are parsed by dashboards, so their format must stay stable.
"""

from datetime import datetime, time, timezone
from decimal import Decimal

from .models import Anomaly, AnomalyType, LabResult, Patient, Symptom

# Keyed by upper-cased test type, values in mg/dL.
LAB_THRESHOLDS = {
    "LDL": Decimal(200),
    "GLUCOSE": Decimal(250),
}
# On a 0-10 scale, inclusive.
SYMPTOM_SEVERITY_THRESHOLD = 8


def render_number(value: Decimal) -> str:
    """Renders a decimal without exponent or trailing zeros (210.0 -> '210')."""
    return format(value.normalize(), "f")


def render_date(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    if value.time() == time(0):
        return value.date().isoformat()
    return value.isoformat()


def lab_message(test_type: str, value: Decimal, units: str) -> str:
    return f"Abnormal {test_type}: {render_number(value)} {units}"


def symptom_message(symptom: str, severity: int) -> str:
    # Only the first letter changes; "shortness of Breath" keeps its casing.
    return f"Symptom: {symptom[:1].upper() + symptom[1:]} (severity {severity})"


def evaluate_lab_result(result: LabResult) -> Anomaly | None:
    threshold = LAB_THRESHOLDS.get(result.test_type.upper())
    if threshold is None or result.value <= threshold:
        return None
    return Anomaly(
        patient_id=result.patient_id,
        message=lab_message(result.test_type, result.value, result.units),
        type=AnomalyType.LAB,
        reported_date=result.result_date,
        value=result.value,
        units=result.units,
    )


def evaluate_symptom(symptom: Symptom) -> Anomaly | None:
    if symptom.severity < SYMPTOM_SEVERITY_THRESHOLD:
        return None
    return Anomaly(
        patient_id=symptom.patient_id,
        message=symptom_message(symptom.symptom, symptom.severity),
        type=AnomalyType.SYMPTOM,
        reported_date=symptom.reported_date,
        severity=symptom.severity,
    )


def evaluate_enrollment(
    patient: Patient, now: datetime, enroll_date_raw: str | None = None
) -> Anomaly | None:
    """Flags an enrollment dated after `now`, quoting the date as uploaded when given."""
    if patient.enroll_date <= now:
        return None
    shown = enroll_date_raw or render_date(patient.enroll_date)
    return Anomaly(
        patient_id=patient.id,
        message=f"Future enrollment date detected: {shown}",
        type=AnomalyType.ENROLLMENT,
        reported_date=patient.enroll_date,
    )


def evaluate(
    record: LabResult | Symptom | Patient, now: datetime | None = None
) -> Anomaly | None:
    """
    Checks a stored record against the clinical thresholds.

    Args:
        record: A record that has just been accepted for persistence.
        now: Reference time for the future-enrollment check. Defaults to the
             current UTC time.

    Returns:
        The anomaly to log, or None when the record is within range.
    """
    if isinstance(record, LabResult):
        return evaluate_lab_result(record)
    if isinstance(record, Symptom):
        return evaluate_symptom(record)
    if isinstance(record, Patient):
        return evaluate_enrollment(record, now or datetime.now(timezone.utc))
    return None
