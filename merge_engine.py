"""
Key-based left join of two in-memory tables.

Rows are plain dicts. A dataset's schema is inferred from its first row only,
so ragged rows further down never add candidate key columns.
"""
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class MergeError(ValueError):
    """Base class for data problems surfaced to the caller"""


class InvalidKey(MergeError):
    pass


class UnsupportedFormat(MergeError):
    pass


class DatasetParseError(MergeError):
    pass


class SessionNotReady(MergeError):
    pass


class EmptyKeyPolicy(str, Enum):
    """How rows whose key normalizes to an empty string are treated"""

    MATCH = "match"
    NEVER = "never"


class TabularDataset:
    """Ordered rows loaded from one file"""

    def __init__(self, rows: Optional[Iterable[Row]] = None, name: Optional[str] = None):
        self._rows: List[Row] = [dict(row) for row in (rows or [])]
        self.name = name

    @property
    def rows(self) -> List[Row]:
        return self._rows

    @property
    def fields(self) -> List[str]:
        """Field names of the first row, in order"""
        if not self._rows:
            return []
        return list(self._rows[0].keys())

    def head(self, n: int) -> List[Row]:
        return [dict(row) for row in self._rows[:n]]

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self):
        return iter(self._rows)

    def __bool__(self) -> bool:
        return bool(self._rows)

    def __repr__(self) -> str:
        return f"TabularDataset(name={self.name!r}, rows={len(self._rows)}, fields={self.fields!r})"


def intersect_columns(dataset_a: TabularDataset, dataset_b: TabularDataset) -> List[str]:
    """Fields present in both first rows, in dataset A's order"""
    if not dataset_a or not dataset_b:
        return []
    fields_b = set(dataset_b.fields)
    return [col for col in dataset_a.fields if col in fields_b]


def default_key(columns: List[str]) -> Optional[str]:
    return columns[0] if columns else None


def normalize_key(value: Any) -> str:
    """Canonical string form of a key value: missing -> '', else str() and strip"""
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        # spreadsheet readers hand back whole numbers as floats
        if value.is_integer():
            return str(int(value))
    return str(value).strip()


@dataclass
class ResultSet:
    """Outcome of one merge: matched rows of A merged with B, and A's leftovers"""

    key: str
    merged_rows: List[Row] = field(default_factory=list)
    unmatched_rows: List[Row] = field(default_factory=list)
    empty_key_policy: EmptyKeyPolicy = EmptyKeyPolicy.MATCH

    @property
    def merged_count(self) -> int:
        return len(self.merged_rows)

    @property
    def unmatched_count(self) -> int:
        return len(self.unmatched_rows)

    @property
    def total_rows(self) -> int:
        return self.merged_count + self.unmatched_count

    def preview(self, n: int = 10) -> List[Row]:
        return self.merged_rows[:n]

    def preview_unmatched(self, n: int = 10) -> List[Row]:
        return self.unmatched_rows[:n]

    def warnings(self) -> List[str]:
        if not self.unmatched_rows:
            return []
        return [f"{self.unmatched_count} rows from primary file had no match in the secondary file."]

    def summary(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "empty_key_policy": self.empty_key_policy.value,
            "rows_a": self.total_rows,
            "merged_count": self.merged_count,
            "unmatched_count": self.unmatched_count,
        }


def _build_index(dataset_b: TabularDataset, key: str, empty_key_policy: EmptyKeyPolicy) -> Dict[str, Row]:
    """Map normalized key -> first row of B carrying it"""
    index: Dict[str, Row] = {}
    for row in dataset_b:
        normalized = normalize_key(row.get(key))
        if normalized == "" and empty_key_policy is EmptyKeyPolicy.NEVER:
            continue
        index.setdefault(normalized, row)
    return index


def merge_datasets(
    dataset_a: TabularDataset,
    dataset_b: TabularDataset,
    key: str,
    empty_key_policy: EmptyKeyPolicy = EmptyKeyPolicy.MATCH,
) -> ResultSet:
    """
    Left join dataset A to dataset B on a single key.

    Every row of A lands in exactly one of merged_rows / unmatched_rows, in A's
    order. When several rows of B share a key only the first one is used. On
    field name collisions the B value wins. Neither input is mutated.
    """
    if not key:
        raise InvalidKey("A merge key is required")
    if dataset_a and key not in dataset_a.fields:
        raise InvalidKey(f"Column '{key}' not found in primary dataset")
    # an empty secondary is allowed and leaves every primary row unmatched
    if dataset_b and key not in dataset_b.fields:
        raise InvalidKey(f"Column '{key}' not found in secondary dataset")

    empty_key_policy = EmptyKeyPolicy(empty_key_policy)
    index = _build_index(dataset_b, key, empty_key_policy)

    result = ResultSet(key=key, empty_key_policy=empty_key_policy)
    for row in dataset_a:
        match = index.get(normalize_key(row.get(key)))
        if match is None:
            result.unmatched_rows.append(dict(row))
        else:
            result.merged_rows.append({**row, **match})

    logger.debug(
        "Merged on %r: %d matched, %d unmatched (%d distinct keys in secondary)",
        key, result.merged_count, result.unmatched_count, len(index),
    )
    return result
