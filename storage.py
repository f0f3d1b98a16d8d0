"""
Local storage for crawl runs.

- KeyValueStore: one JSON file per key, used for persisted state
- Dataset: append-only JSONL sink for output records
"""

import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r'^[a-zA-Z0-9!\-_.\'()]{1,256}$')


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class KeyValueStore:
    """Persist JSON values by key under a directory."""

    def __init__(self, directory: str):
        self.directory = directory
        ensure_dir(directory)

    def _path(self, key: str) -> str:
        if not KEY_PATTERN.match(key):
            raise ValueError(f"Invalid key-value store key: {key!r}")
        return os.path.join(self.directory, f"{key}.json")

    def get_value(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not os.path.isfile(path):
            return default
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def set_value(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(value, f, ensure_ascii=False, indent=2, default=_json_default)
        os.replace(tmp_path, path)
        logger.debug(f"Stored key {key} in {self.directory}")


class Dataset:
    """Append output records to a JSONL file."""

    def __init__(self, directory: str, name: str = "dataset"):
        ensure_dir(directory)
        self.path = os.path.join(directory, f"{name}.jsonl")
        self.count = 0

    def push_data(self, data: Any) -> None:
        """Append one item, or each item of a list or tuple."""
        items: List[Any] = list(data) if isinstance(data, (list, tuple)) else [data]
        with open(self.path, 'a', encoding='utf-8') as f:
            for item in items:
                f.write(json.dumps(item, ensure_ascii=False, default=_json_default) + "\n")
        self.count += len(items)

    def iterate(self) -> Iterable[Dict[str, Any]]:
        if not os.path.isfile(self.path):
            return
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                if line.strip():
                    yield json.loads(line)


def open_storage(root: str, dataset_name: Optional[str] = None):
    """Return the (key-value store, dataset) pair rooted at `root`."""
    store = KeyValueStore(os.path.join(root, "key_value_store"))
    dataset = Dataset(os.path.join(root, "datasets"), dataset_name or "dataset")
    return store, dataset
