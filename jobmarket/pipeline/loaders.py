"""
Input loaders for collector batches.

Supports CSV (comma or semicolon delimited), JSON (a list, or an object
wrapping the list under "jobs", "data" or "results") and JSON Lines.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List

from ..errors import InputError

logger = logging.getLogger(__name__)

JSON_WRAPPER_KEYS = ("jobs", "data", "results", "items")


def _tag_source(records: List[Dict[str, Any]], source: str) -> List[Dict[str, Any]]:
    for record in records:
        if not record.get("source"):
            record["source"] = source
    return records


def _load_csv(path: Path) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        sample = f.read(8192)
        f.seek(0)
        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=";,\t")
        except csv.Error:
            dialect = csv.excel
        reader = csv.DictReader(f, dialect=dialect)
        return [
            {k.strip(): v for k, v in row.items() if k is not None}
            for row in reader
        ]


def _load_json(path: Path) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        for key in JSON_WRAPPER_KEYS:
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            raise InputError(f"{path}: JSON object has no list under {', '.join(JSON_WRAPPER_KEYS)}")
    if not isinstance(data, list):
        raise InputError(f"{path}: expected a JSON list of records")
    return [item for item in data if isinstance(item, dict)]


def _load_jsonl(path: Path) -> List[Dict[str, Any]]:
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError as e:
                raise InputError(f"{path}:{line_no}: invalid JSON line ({e})")
            if isinstance(item, dict):
                records.append(item)
    return records


LOADERS = {
    ".csv": _load_csv,
    ".json": _load_json,
    ".jsonl": _load_jsonl,
    ".ndjson": _load_jsonl,
}


def load_records(path) -> List[Dict[str, Any]]:
    """
    Load raw records from one collector file.

    Records without a "source" field are tagged with the file stem.

    Raises:
        InputError: Missing file, unsupported suffix or malformed content
    """
    path = Path(path)
    loader = LOADERS.get(path.suffix.lower())
    if loader is None:
        raise InputError(f"Unsupported input format: {path.suffix or path.name}")
    try:
        records = loader(path)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, csv.Error) as e:
        raise InputError(f"Could not read {path}: {e}")

    logger.info(f"Loaded {len(records)} records from {path.name}")
    return _tag_source(records, path.stem)


def load_many(paths: Iterable) -> List[Dict[str, Any]]:
    """Load and concatenate several files, preserving order."""
    merged: List[Dict[str, Any]] = []
    for path in paths:
        merged.extend(load_records(path))
    return merged
