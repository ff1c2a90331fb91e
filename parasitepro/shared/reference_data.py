"""Reference catalog of known organisms and the detection matcher.

Matching is an ordered fallback, first match wins:
  1) exact id
  2) detection scientific name contained in an entry's scientific name
  3) detection common name contained in an entry's common name
Each rule is tried across the whole catalog before the next one. There is no
scoring: overlapping names (e.g. "Taenia") resolve to the first entry in
catalog order.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parents[1] / "data" / "reference_catalog.json"

SEARCH_LIST_FIELDS = ("aliases", "symptoms", "transmission", "regions")


def load_json(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Missing file: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


class ReferenceCatalog:
    def __init__(self, entries: Sequence[Mapping[str, Any]]) -> None:
        self._entries: List[Dict[str, Any]] = [dict(e) for e in entries]
        self._by_id: Dict[str, Dict[str, Any]] = {}
        for entry in self._entries:
            entry_id = str(entry.get("id", "")).strip()
            if not entry_id:
                raise ValueError("reference entry without id")
            if entry_id in self._by_id:
                raise ValueError(f"duplicate reference id: {entry_id}")
            self._by_id[entry_id] = entry

    @classmethod
    def from_file(cls, path: Optional[Path] = None) -> "ReferenceCatalog":
        data = load_json(Path(path) if path else DEFAULT_CATALOG_PATH)
        entries = data.get("entries", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ValueError("reference catalog must contain an 'entries' list")
        return cls(entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    def get(self, entry_id: str) -> Optional[Dict[str, Any]]:
        return self._by_id.get(str(entry_id or "").strip())

    def match(self, detection: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Best reference entry for a detection, or None (not an error)."""

        exact = self.get(detection.get("parasiteId", ""))
        if exact is not None:
            return exact

        scientific = _norm(detection.get("scientificName"))
        if scientific:
            for entry in self._entries:
                if scientific in _norm(entry.get("scientificName")):
                    return entry

        common = _norm(detection.get("commonName"))
        if common:
            for entry in self._entries:
                if common in _norm(entry.get("commonName")):
                    return entry

        return None

    def search(self, query: Optional[str]) -> List[Dict[str, Any]]:
        q = _norm(query)
        if len(q) < 2:
            return self.entries

        hits: List[Dict[str, Any]] = []
        for entry in self._entries:
            fields = [
                _norm(entry.get("commonName")),
                _norm(entry.get("scientificName")),
                _norm(entry.get("type")),
            ]
            for key in SEARCH_LIST_FIELDS:
                fields.extend(_norm(v) for v in entry.get(key, []) or [])
            if any(q in f for f in fields):
                hits.append(entry)
        return hits

    def by_type(self, parasite_type: str) -> List[Dict[str, Any]]:
        return [e for e in self._entries if e.get("type") == parasite_type]

    def by_urgency(self, urgency: str) -> List[Dict[str, Any]]:
        return [e for e in self._entries if e.get("urgencyLevel") == urgency]


@lru_cache(maxsize=4)
def load_catalog(path: Optional[str] = None) -> ReferenceCatalog:
    """Cached catalog (bundled one when `path` is empty)."""

    return ReferenceCatalog.from_file(Path(path) if path else None)
