import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable

from .errors import ValidationError

logger = logging.getLogger(__name__)

VERSION_KEYS = ("version", "date", "edit_note")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VersionDiff:
    field: str
    old_value: Any
    new_value: Any


@dataclass
class VersionComparison:
    version1: int
    version2: int
    differences: list[VersionDiff] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.differences)


@dataclass
class RepairResult:
    versions: list[dict[str, Any]]
    current_version: int
    was_repaired: bool


def _epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return round(value.timestamp() * 1000)


def values_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, datetime) or isinstance(right, datetime):
        if not (isinstance(left, datetime) and isinstance(right, datetime)):
            return False
        return _epoch_ms(left) == _epoch_ms(right)
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, (list, tuple)) or isinstance(right, (list, tuple)):
        if not (isinstance(left, (list, tuple)) and isinstance(right, (list, tuple))):
            return False
        return len(left) == len(right) and all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) or isinstance(right, dict):
        if not (isinstance(left, dict) and isinstance(right, dict)):
            return False
        if set(left) != set(right):
            return False
        return all(values_equal(left[key], right[key]) for key in left)
    return left == right


def snapshot_fields(source: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    return {name: source.get(name) for name in fields}


def create_version(
    current_number: int,
    fields: dict[str, Any],
    edit_note: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    return {
        **fields,
        "version": current_number + 1,
        "date": now or utcnow(),
        "edit_note": edit_note,
    }


def get_latest_version(versions: list[dict[str, Any]]) -> dict[str, Any] | None:
    if not versions:
        return None
    return max(versions, key=lambda item: item["version"])


def get_version_by_number(versions: list[dict[str, Any]], number: int) -> dict[str, Any] | None:
    for item in versions:
        if item.get("version") == number:
            return item
    return None


def compare_versions(
    version1: dict[str, Any],
    version2: dict[str, Any],
    fields: Iterable[str],
) -> VersionComparison:
    comparison = VersionComparison(version1=version1["version"], version2=version2["version"])
    for name in fields:
        old_value = version1.get(name)
        new_value = version2.get(name)
        if not values_equal(old_value, new_value):
            comparison.differences.append(VersionDiff(field=name, old_value=old_value, new_value=new_value))
    return comparison


def should_create_version(current: dict[str, Any], changes: dict[str, Any], fields: Iterable[str]) -> bool:
    for name in fields:
        if name in changes and not values_equal(current.get(name), changes[name]):
            return True
    return False


def prune_versions(versions: list[dict[str, Any]], max_versions: int) -> list[dict[str, Any]]:
    if max_versions < 0:
        raise ValidationError("max_versions must be zero or positive")
    ordered = sorted(versions, key=lambda item: item["version"])
    if max_versions == 0:
        return []
    return ordered[-max_versions:]


def collapse_to_latest(versions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return prune_versions(versions, 1)


def _chronological_key(item: dict[str, Any]) -> tuple[int, int]:
    moment = item["date"]
    if not isinstance(moment, datetime):
        moment = datetime(moment.year, moment.month, moment.day, tzinfo=timezone.utc)
    return _epoch_ms(moment), item["version"]


def _is_valid_version(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    number = item.get("version")
    if not isinstance(number, int) or isinstance(number, bool):
        return False
    return isinstance(item.get("date"), (datetime, date))


def repair_versioning(versions: list[Any], current_version: Any) -> RepairResult:
    valid = [item for item in versions if _is_valid_version(item)]
    was_repaired = len(valid) != len(versions)
    repaired: list[dict[str, Any]] = []
    for index, item in enumerate(sorted(valid, key=_chronological_key), start=1):
        if item["version"] != index:
            was_repaired = True
        repaired.append({**item, "version": index})
    expected_current = len(repaired)
    if current_version != expected_current:
        was_repaired = True
    if was_repaired:
        logger.info(
            "repaired version history: %d -> %d entries, current %s -> %d",
            len(versions),
            len(repaired),
            current_version,
            expected_current,
        )
    return RepairResult(versions=repaired, current_version=expected_current, was_repaired=was_repaired)


def validate_versionable(obj: Any) -> list[str]:
    problems: list[str] = []
    if not isinstance(obj, dict):
        return ["record is not a mapping"]
    versions = obj.get("versions")
    if not isinstance(versions, list):
        return ["versions must be a list"]
    if not versions:
        problems.append("versions must not be empty")
    current = obj.get("current_version")
    if not isinstance(current, int) or isinstance(current, bool) or current < 1:
        problems.append("current_version must be a positive integer")
    numbers = [item.get("version") for item in versions if isinstance(item, dict)]
    if len(numbers) != len(versions) or not all(_is_valid_version(item) for item in versions):
        problems.append("every version needs an integer number and a date")
    elif sorted(numbers) != list(range(1, len(numbers) + 1)):
        problems.append("version numbers must be contiguous from 1")
    elif isinstance(current, int) and numbers and current != max(numbers):
        problems.append("current_version does not match the latest version")
    return problems


def version_change_summary(versions: list[dict[str, Any]]) -> dict[str, Any]:
    if not versions:
        return {
            "total_versions": 0,
            "first_version_date": None,
            "last_version_date": None,
            "edit_notes": [],
        }
    ordered = sorted(versions, key=lambda item: item["version"])
    return {
        "total_versions": len(ordered),
        "first_version_date": ordered[0]["date"],
        "last_version_date": ordered[-1]["date"],
        "edit_notes": [item["edit_note"] for item in ordered if item.get("edit_note")],
    }
