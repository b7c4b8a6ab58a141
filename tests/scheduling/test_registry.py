"""Tests for the schedule registry."""

import threading

import pytest

from keybeat.core.errors import InvalidScheduleDefinition
from keybeat.scheduling.registry import (
    ScheduleDefinition,
    clear_registry,
    coerce_definition,
    define_schedule,
    get_schedule,
    is_valid_schedule,
    list_schedules,
    registry_snapshot,
)


def perform(data):
    return data


class TestIsValidSchedule:
    def test_valid_mapping(self):
        assert is_valid_schedule({"name": "a", "interval": "1 second", "perform": perform})

    def test_valid_definition(self):
        assert is_valid_schedule(ScheduleDefinition("a", "1 second", perform))

    @pytest.mark.parametrize(
        "candidate",
        [
            None,
            "sendEmail",
            42,
            {},
            {"name": "a", "interval": "1 second"},
            {"name": "a", "interval": "1 second", "perform": "not callable"},
            {"name": "", "interval": "1 second", "perform": perform},
            {"name": "   ", "interval": "1 second", "perform": perform},
            {"name": "a", "interval": "", "perform": perform},
            {"name": 1, "interval": "1 second", "perform": perform},
            {"name": "a", "interval": "1 second", "perform": perform, "data": [1, 2]},
            {"name": "a", "interval": "1 second", "perform": perform, "data": "abc"},
        ],
    )
    def test_invalid(self, candidate):
        assert is_valid_schedule(candidate) is False


class TestDefineSchedule:
    def test_registers_valid(self):
        snapshot = define_schedule({"name": "a", "interval": "1 second", "perform": perform})
        assert list(snapshot) == ["a"]
        assert isinstance(snapshot["a"], ScheduleDefinition)
        assert snapshot["a"].data == {}

    def test_invalid_never_raises_and_is_not_registered(self):
        assert define_schedule(None) == {}
        assert define_schedule({"name": "a"}) == {}
        assert list_schedules() == []

    @pytest.mark.parametrize("data", [[1, 2], "abc", 5])
    def test_non_mapping_data_is_rejected(self, data):
        candidate = {"name": "a", "interval": "1 second", "perform": perform, "data": data}
        assert define_schedule(candidate) == {}
        assert define_schedule(ScheduleDefinition.from_mapping(candidate)) == {}
        assert list_schedules() == []

    def test_none_data_becomes_empty_mapping(self):
        snapshot = define_schedule(
            {"name": "a", "interval": "1 second", "perform": perform, "data": None}
        )
        assert snapshot["a"].data == {}

    def test_first_write_wins(self):
        first = ScheduleDefinition("a", "1 second", perform)
        second = ScheduleDefinition("a", "5 minutes", perform)
        define_schedule(first)
        snapshot = define_schedule(second)
        assert snapshot["a"] is first

    def test_overrides(self):
        snapshot = define_schedule(
            {"name": "a", "interval": "1 second", "perform": perform}, data={"k": 1}
        )
        assert snapshot["a"].data == {"k": 1}

    def test_overrides_on_definition(self):
        snapshot = define_schedule(ScheduleDefinition("a", "1 second", perform), timezone="UTC")
        assert snapshot["a"].timezone == "UTC"

    def test_snapshot_is_a_copy(self):
        snapshot = define_schedule({"name": "a", "interval": "1 second", "perform": perform})
        snapshot.clear()
        assert list_schedules() == ["a"]

    def test_concurrent_definitions_keep_one(self):
        definitions = [ScheduleDefinition("race", "1 second", perform) for _ in range(20)]
        threads = [threading.Thread(target=define_schedule, args=(d,)) for d in definitions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert list_schedules() == ["race"]
        assert registry_snapshot()["race"] in definitions


class TestLookups:
    def test_get_schedule(self):
        define_schedule({"name": "a", "interval": "1 second", "perform": perform})
        assert get_schedule("a").interval == "1 second"
        assert get_schedule("missing") is None

    def test_clear_registry(self):
        define_schedule({"name": "a", "interval": "1 second", "perform": perform})
        assert clear_registry() == {}
        assert registry_snapshot() == {}


class TestCoerceDefinition:
    def test_mapping(self):
        definition = coerce_definition(
            {"name": "a", "interval": "1 second", "perform": perform, "data": {"x": 1}}
        )
        assert definition == ScheduleDefinition("a", "1 second", perform, {"x": 1})

    def test_invalid(self):
        with pytest.raises(InvalidScheduleDefinition):
            coerce_definition({"name": "a"})

    def test_from_mapping_default_name(self):
        definition = ScheduleDefinition.from_mapping(
            {"interval": "1 second", "perform": perform}, name="fromFile"
        )
        assert definition.name == "fromFile"
