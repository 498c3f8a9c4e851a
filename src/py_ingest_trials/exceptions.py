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
"""Exception hierarchy for the ingestion pipeline.

Fatal errors abort a whole upload and reach the caller. Record-level errors
carry the anomaly that should be logged in place of the rejected record and
never leave the pipeline.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Anomaly


class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class FormatUnrecognized(IngestionError):
    """The content is neither a list document, an XML document nor tabular text."""


class DuplicateUpload(IngestionError):
    """Byte-identical content has already been ingested."""


class StructuralParseFailure(IngestionError):
    """The content was classified but cannot be decoded into records."""


class PersistenceFailure(IngestionError):
    """The persistence backend rejected or failed a request."""


class RecordRejected(IngestionError):
    """A single record was rejected; the upload carries on with the next one."""

    def __init__(self, anomaly: Anomaly) -> None:
        super().__init__(anomaly.message)
        self.anomaly = anomaly


class ValidationFailed(RecordRejected):
    """The record violates a structural or domain constraint."""


class ReferenceNotFound(RecordRejected):
    """The record references a patient that was never enrolled."""


class DuplicateRecord(RecordRejected):
    """An identical record is already stored."""


class SubscriberLimitReached(Exception):
    """The event broadcaster has no room for another subscriber."""
