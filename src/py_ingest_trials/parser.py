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

"""Decoders for the three accepted upload shapes.

Each decoder turns raw content into loosely-typed rows plus the record kind
they hold. Typing and domain checks happen later in the validator.
"""

import csv
import io
import json
from typing import Any

from lxml import etree as ET
from pydantic import BaseModel

from .detector import ContentFormat, xml_parser
from .exceptions import StructuralParseFailure
from .models import RecordKind

# A tabular upload with this column holds medication events, not enrollments.
MEDICATION_COLUMN = "patientCode"

LAB_RESULTS_ROOT = "LabResults"
LAB_RESULT_NODE = "Result"


class RawRow(BaseModel):
    """One undecoded record and where it sat in the upload."""

    position: int
    fields: dict[str, Any]
    problem: str | None = None


class ParsedUpload(BaseModel):
    kind: RecordKind
    rows: list[RawRow]


def parse_tabular(content: str) -> ParsedUpload:
    """
    Parses header-driven comma-separated rows.

    Rows whose cell count differs from the header are kept with a `problem`
    so the validator can reject them one at a time.

    Raises:
        StructuralParseFailure: If the text has no header or is not valid CSV.
    """
    # A leading byte order mark would otherwise stick to the first column name.
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff").strip()))
    rows: list[RawRow] = []
    try:
        if not reader.fieldnames:
            msg = "Tabular upload has no header row."
            raise StructuralParseFailure(msg)
        header = [name.strip() for name in reader.fieldnames]
        reader.fieldnames = header

        for record in reader:
            problem = None
            if None in record:
                problem = (
                    f"Malformed row at line {reader.line_num}: expected "
                    f"{len(header)} fields, found {len(header) + len(record[None])}"
                )
            elif any(value is None for value in record.values()):
                present = sum(value is not None for value in record.values())
                problem = (
                    f"Malformed row at line {reader.line_num}: expected "
                    f"{len(header)} fields, found {present}"
                )
            fields = {
                key: value.strip() if isinstance(value, str) else value
                for key, value in record.items()
                if key is not None
            }
            rows.append(RawRow(position=reader.line_num, fields=fields, problem=problem))
    except csv.Error as e:
        msg = f"Could not decode tabular upload: {e}"
        raise StructuralParseFailure(msg) from e

    kind = (
        RecordKind.MEDICATION_EVENTS if MEDICATION_COLUMN in header else RecordKind.ENROLLMENTS
    )
    return ParsedUpload(kind=kind, rows=rows)


def parse_list_document(content: str) -> ParsedUpload:
    """Parses a JSON array of symptom objects."""
    try:
        parsed = json.loads(content)
    except (ValueError, RecursionError) as e:
        msg = f"Could not decode list document: {e}"
        raise StructuralParseFailure(msg) from e

    if not isinstance(parsed, list) or not all(isinstance(item, dict) for item in parsed):
        msg = "List document must be an array of objects."
        raise StructuralParseFailure(msg)

    rows = [RawRow(position=index, fields=item) for index, item in enumerate(parsed, start=1)]
    return ParsedUpload(kind=RecordKind.SYMPTOMS, rows=rows)


def _local_name(element: ET._Element) -> str:
    return ET.QName(element).localname


def parse_hierarchical_document(content: str) -> ParsedUpload:
    """
    Parses a `<LabResults>` document into one row per `<Result>` node.

    A single `<Result>` and a list of them are handled the same way. Each
    child element of a result becomes a field keyed by its tag name.

    Raises:
        StructuralParseFailure: If the XML is malformed, the root is not
            `<LabResults>`, or it holds no `<Result>` nodes.
    """
    try:
        root = ET.fromstring(content.strip().encode("utf-8"), parser=xml_parser())
    except (ET.XMLSyntaxError, ValueError) as e:
        msg = f"Malformed lab results document: {e}"
        raise StructuralParseFailure(msg) from e

    if _local_name(root) != LAB_RESULTS_ROOT:
        msg = f"Expected a <{LAB_RESULTS_ROOT}> document, found <{_local_name(root)}>."
        raise StructuralParseFailure(msg)

    # Comments and processing instructions have non-string tags.
    results = [
        node
        for node in root
        if isinstance(node.tag, str) and _local_name(node) == LAB_RESULT_NODE
    ]
    if not results:
        msg = f"Lab results document contains no <{LAB_RESULT_NODE}> entries."
        raise StructuralParseFailure(msg)

    rows = []
    for index, node in enumerate(results, start=1):
        fields = {
            _local_name(child): (child.text or "").strip()
            for child in node
            if isinstance(child.tag, str)
        }
        rows.append(RawRow(position=index, fields=fields))
    return ParsedUpload(kind=RecordKind.LAB_RESULTS, rows=rows)


def parse(content: str, content_format: ContentFormat) -> ParsedUpload:
    """Dispatches to the decoder for a detected format."""
    if content_format is ContentFormat.TABULAR:
        return parse_tabular(content)
    if content_format is ContentFormat.LIST_DOCUMENT:
        return parse_list_document(content)
    if content_format is ContentFormat.HIERARCHICAL_DOCUMENT:
        return parse_hierarchical_document(content)
    msg = f"No decoder for content format '{content_format.value}'."
    raise StructuralParseFailure(msg)
