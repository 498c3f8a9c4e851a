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
"""Classifies raw upload content by shape, since uploads carry no content type."""

import json
from enum import Enum

from lxml import etree as ET

# Lower-cased so the header check is case-insensitive.
TABULAR_HEADER_TOKENS = ("patientid", "enrolldate", "trialid", "patientcode")


class ContentFormat(str, Enum):
    TABULAR = "tabular"
    LIST_DOCUMENT = "list-document"
    HIERARCHICAL_DOCUMENT = "hierarchical-document"
    NONE = "none"


def xml_parser() -> ET.XMLParser:
    """Return a strict XML parser that never expands entities or hits the network."""
    return ET.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def _is_list_document(content: str) -> bool:
    try:
        parsed = json.loads(content)
    except (ValueError, RecursionError):
        return False
    return isinstance(parsed, list) and all(isinstance(item, dict) for item in parsed)


def _is_hierarchical_document(trimmed: str) -> bool:
    if not trimmed.startswith("<"):
        return False
    try:
        ET.fromstring(trimmed.encode("utf-8"), parser=xml_parser())
    except (ET.XMLSyntaxError, ValueError):
        return False
    return True


def _is_tabular(trimmed: str) -> bool:
    first_line = trimmed.splitlines()[0].strip() if trimmed else ""
    if "," not in first_line:
        return False
    lowered = first_line.lower()
    return any(token in lowered for token in TABULAR_HEADER_TOKENS)


def detect(content: str) -> ContentFormat:
    """Classify content as a list document, an XML document or tabular text.

    Checks run from the strictest grammar to the loosest, first match wins:
    a JSON array of objects, then well-formed XML, then comma-separated text
    whose first line names a known header column. Never raises.
    """
    if _is_list_document(content):
        return ContentFormat.LIST_DOCUMENT

    trimmed = content.strip()
    if _is_hierarchical_document(trimmed):
        return ContentFormat.HIERARCHICAL_DOCUMENT

    if _is_tabular(trimmed):
        return ContentFormat.TABULAR

    return ContentFormat.NONE
