"""
Rubric Import / Export
======================
Rubrics travel as JSON documents. Authoring happens in the browser client;
this backend only needs to receive a finished rubric, keep it, and hand it
back.
"""
import json
import logging
import uuid
from typing import List, Optional

from rubric_grader.exceptions import RubricNotFoundError
from rubric_grader.models import Rubric

logger = logging.getLogger(__name__)

RUBRIC_KEY_PREFIX = "rubric_"


def export_rubric(rubric: Rubric) -> str:
    return json.dumps(rubric.to_json_dict(), indent=2)


def import_rubric(text: str, new_id: bool = False) -> Rubric:
    """
    Parse a rubric JSON document.

    Raises:
        ValueError: when the document is not a valid rubric
    """
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Rubric document must be a JSON object")
    if new_id or not data.get("id"):
        data["id"] = uuid.uuid4().hex
    return Rubric.model_validate(data)


class RubricLibrary:
    """Rubrics kept in local device storage, keyed by id."""

    def __init__(self, storage):
        self.storage = storage

    def put(self, rubric: Rubric) -> Rubric:
        self.storage.set(f"{RUBRIC_KEY_PREFIX}{rubric.id}", export_rubric(rubric))
        logger.info("Stored rubric %s (%s)", rubric.id, rubric.name)
        return rubric

    def get(self, rubric_id: str) -> Rubric:
        raw = self.storage.get(f"{RUBRIC_KEY_PREFIX}{rubric_id}")
        if not raw:
            raise RubricNotFoundError(f"Rubric not found: {rubric_id}")
        return import_rubric(raw)

    def list_ids(self) -> List[str]:
        return [key[len(RUBRIC_KEY_PREFIX):] for key in self.storage.keys()
                if key.startswith(RUBRIC_KEY_PREFIX)]

    def delete(self, rubric_id: str):
        """Remove a rubric. Raises RubricNotFoundError for an unknown id."""
        key = f"{RUBRIC_KEY_PREFIX}{rubric_id}"
        if not self.storage.get(key):
            raise RubricNotFoundError(f"Rubric not found: {rubric_id}")
        self.storage.remove(key)
        logger.info("Deleted rubric %s", rubric_id)

    def duplicate(self, rubric: Rubric, name: Optional[str] = None) -> Rubric:
        """Store a copy of a rubric under a fresh id."""
        copy = import_rubric(export_rubric(rubric), new_id=True)
        copy = copy.model_copy(update={"name": name or f"{rubric.name} (Kopie)"})
        return self.put(copy)
