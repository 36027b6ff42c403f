from datetime import datetime, timedelta, timezone

import pytest

from bitacora.errors import ValidationError
from bitacora.versioning import (
    collapse_to_latest,
    compare_versions,
    create_version,
    get_latest_version,
    prune_versions,
    repair_versioning,
    should_create_version,
    validate_versionable,
    values_equal,
    version_change_summary,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _history(count: int) -> list[dict]:
    return [create_version(number, {"reason": f"r{number + 1}"}, now=T0 + timedelta(days=number)) for number in range(count)]


def test_create_version_increments_number() -> None:
    first = create_version(0, {"reason": "a"}, now=T0)
    second = create_version(first["version"], {"reason": "b"}, "fix typo", now=T0)
    assert first["version"] == 1
    assert second["version"] == 2
    assert second["edit_note"] == "fix typo"
    assert second["reason"] == "b"


def test_values_equal_semantics() -> None:
    assert values_equal(T0, T0.replace(tzinfo=None))
    assert not values_equal(True, 1)
    assert not values_equal([1, 2], [2, 1])
    assert values_equal({"a": 1, "b": [1]}, {"b": [1], "a": 1})
    assert not values_equal({"a": 1}, {"a": 1, "b": None})
    assert values_equal(None, None)
    assert not values_equal(None, "")


def test_compare_versions_lists_changed_fields() -> None:
    v1 = create_version(0, {"reason": "a", "milestone": "gift"}, now=T0)
    v2 = create_version(1, {"reason": "b", "milestone": "gift"}, now=T0)
    comparison = compare_versions(v1, v2, ("reason", "milestone"))
    assert comparison.has_changes
    assert [diff.field for diff in comparison.differences] == ["reason"]
    assert comparison.differences[0].old_value == "a"


def test_should_create_version_ignores_unchanged_fields() -> None:
    current = {"reason": "a", "milestone": None}
    assert not should_create_version(current, {"reason": "a"}, ("reason", "milestone"))
    assert should_create_version(current, {"milestone": "gift"}, ("reason", "milestone"))
    assert not should_create_version(current, {"unrelated": 1}, ("reason", "milestone"))


def test_prune_versions_keeps_latest_in_ascending_order() -> None:
    versions = list(reversed(_history(5)))
    pruned = prune_versions(versions, 2)
    assert [item["version"] for item in pruned] == [4, 5]
    assert prune_versions(versions, 0) == []
    assert [item["version"] for item in collapse_to_latest(versions)] == [5]


def test_prune_versions_rejects_negative_limit() -> None:
    with pytest.raises(ValidationError):
        prune_versions(_history(2), -1)


def test_get_latest_version() -> None:
    assert get_latest_version([]) is None
    assert get_latest_version(list(reversed(_history(3))))["version"] == 3


def test_repair_versioning_renumbers_chronologically() -> None:
    history = _history(3)
    broken = [
        {**history[2], "version": 7},
        {**history[0], "version": 3},
        "garbage",
        {**history[1], "version": 3},
    ]
    result = repair_versioning(broken, 9)
    assert result.was_repaired
    assert result.current_version == 3
    assert [item["version"] for item in result.versions] == [1, 2, 3]
    assert [item["reason"] for item in result.versions] == ["r1", "r2", "r3"]


def test_repair_versioning_leaves_valid_history_alone() -> None:
    result = repair_versioning(_history(3), 3)
    assert not result.was_repaired
    assert result.current_version == 3


def test_validate_versionable_reports_problems() -> None:
    assert validate_versionable({"versions": _history(2), "current_version": 2}) == []
    problems = validate_versionable({"versions": [_history(2)[1]], "current_version": 2})
    assert "version numbers must be contiguous from 1" in problems
    assert validate_versionable([]) == ["record is not a mapping"]
    assert "current_version must be a positive integer" in validate_versionable({"versions": _history(1), "current_version": 0})


def test_version_change_summary() -> None:
    versions = [create_version(0, {}, now=T0), create_version(1, {}, "second", now=T0 + timedelta(days=1))]
    summary = version_change_summary(versions)
    assert summary["total_versions"] == 2
    assert summary["first_version_date"] == T0
    assert summary["edit_notes"] == ["second"]
    assert version_change_summary([])["total_versions"] == 0
