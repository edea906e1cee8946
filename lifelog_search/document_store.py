"""Read-only document store over a directory of JSON lifelog exports.

Every ``*.json`` file under the directory holds one document or a list of
documents; every ``*.jsonl`` file holds one document per line. Timestamps
(``createdAt``, ``created_at`` or ``startTime``) are parsed leniently.
"""
import asyncio
import json
import logging
import os
from datetime import date
from typing import Any, Dict, Iterator, List, Optional, Tuple

from dateutil import parser as date_parser
from pydantic import ValidationError

from lifelog_search.models import Document
from lifelog_search.service_interfaces import DocumentStoreInterface, DocumentStoreUnavailableError

# Configure logging
logger = logging.getLogger(__name__)

TIMESTAMP_KEYS = ("createdAt", "created_at", "startTime")


def parse_document(item: Dict[str, Any]) -> Document:
    """Build a Document from one exported record.

    Raises:
        ValueError: If the record has no usable timestamp
        ValidationError: If the record does not fit the document model
    """
    if not isinstance(item, dict):
        raise ValueError(f"expected an object, got {type(item).__name__}")
    record = dict(item)
    for key in TIMESTAMP_KEYS:
        value = record.pop(key, None)
        if value:
            record["createdAt"] = date_parser.parse(value) if isinstance(value, str) else value
            break
    else:
        raise ValueError(f"document {record.get('id')} has no timestamp")

    if "content" not in record and "markdown" in record:
        record["content"] = record.pop("markdown")
    if "duration" in record and "durationSeconds" not in record:
        record["durationSeconds"] = record.pop("duration")
    return Document.model_validate(record)


class JsonDocumentStore(DocumentStoreInterface):
    """Document store reading JSON and JSONL files under ``data_dir``."""

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    async def load_all(self) -> List[Document]:
        return await asyncio.to_thread(self._read_all)

    async def load_by_date_range(self, start: date, end: date) -> List[Tuple[str, date]]:
        documents = await self.load_all()
        return [
            (document.id, document.created_date)
            for document in documents
            if start <= document.created_date <= end
        ]

    async def load(self, document_id: str, document_date: date) -> Optional[Document]:
        for document in await self.load_all():
            if document.id == document_id and document.created_date == document_date:
                return document
        return None

    def _read_all(self) -> List[Document]:
        if not os.path.isdir(self.data_dir):
            raise DocumentStoreUnavailableError(f"Document directory not found: {self.data_dir}")

        documents: Dict[str, Document] = {}
        skipped = 0
        for path, item in self._iter_records():
            try:
                document = parse_document(item)
            except (ValueError, ValidationError) as e:
                skipped += 1
                logger.warning(f"Skipping invalid document in {path}: {str(e)}")
                continue
            documents[document.id] = document

        logger.info(f"Loaded {len(documents)} documents from {self.data_dir} ({skipped} skipped)")
        return sorted(documents.values(), key=lambda d: (d.created_at, d.id))

    def _iter_records(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        for root, _, files in sorted(os.walk(self.data_dir)):
            for filename in sorted(files):
                path = os.path.join(root, filename)
                if filename.endswith(".jsonl"):
                    with open(path, "r", encoding="utf-8") as f:
                        for line_number, line in enumerate(f, 1):
                            if not line.strip():
                                continue
                            try:
                                yield path, json.loads(line)
                            except json.JSONDecodeError as e:
                                logger.warning(f"Invalid JSON on line {line_number} of {path}: {str(e)}")
                elif filename.endswith(".json"):
                    try:
                        with open(path, "r", encoding="utf-8") as f:
                            data = json.load(f)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Invalid JSON in {path}: {str(e)}")
                        continue
                    for item in data if isinstance(data, list) else [data]:
                        yield path, item
