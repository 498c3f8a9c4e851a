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
"""Content fingerprints used to suppress re-ingestion of identical uploads."""

import hashlib
import logging

from .exceptions import DuplicateUpload
from .gateway.base import PersistenceGateway
from .models import RecordKind

logger = logging.getLogger(__name__)

DUPLICATE_UPLOAD_MESSAGE = (
    "This file has already been processed. Skipping to prevent duplicates."
)


def fingerprint(content: str) -> str:
    """Return the SHA-256 hex digest of the raw upload content."""
    return hashlib.sha256(content.encode("utf-8", "surrogatepass")).hexdigest()


class DuplicateGuard:
    """Checks and records upload fingerprints for every ingestion type."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self.gateway = gateway

    async def is_duplicate(self, digest: str) -> bool:
        """Cheap pre-check against fingerprints recorded by earlier uploads."""
        return await self.gateway.find_fingerprint(digest) is not None

    async def claim(self, digest: str, kind: RecordKind) -> None:
        """Record the fingerprint, failing if another upload got there first.

        The unique constraint in the store decides the winner when two identical
        uploads pass `is_duplicate` at the same time.
        """
        claimed = await self.gateway.insert_fingerprint(digest, kind)
        if claimed is None:
            logger.info("Lost fingerprint claim for %s to a concurrent upload.", digest)
            raise DuplicateUpload(DUPLICATE_UPLOAD_MESSAGE)
