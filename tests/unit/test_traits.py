"""Unit tests for the trait table."""
import pytest

from netharness.base.exceptions import ErrorKind, NoSuchTraitError
from netharness.base.traits import TraitTable, get_trait, probe_trait


class _Offering:
    def __init__(self, table):
        self.table = table

    def traits(self, name, index=0):
        return self.table.get(name, index)


class TestTraitTable:
    def test_get_returns_same_object(self):
        value = object()
        table = TraitTable("start-peer").add("start-peer-state", value)
        assert table.get("start-peer-state") is value
        assert table.get("start-peer-state", 0) is value

    def test_indexed_entries(self):
        table = TraitTable("x").add("handle", "a", 0).add("handle", "b", 1)
        assert table.get("handle", 1) == "b"
        assert list(table.names()) == ["handle"]
        assert len(table) == 2

    def test_missing_name_raises_no_such_trait(self):
        table = TraitTable("netjail-start")
        with pytest.raises(NoSuchTraitError) as exc_info:
            table.get("connect-state")
        assert exc_info.value.kind is ErrorKind.NO_SUCH_TRAIT
        assert exc_info.value.label == "netjail-start"

    def test_missing_index_raises(self):
        table = TraitTable("x").add("handle", "a")
        with pytest.raises(NoSuchTraitError):
            table.get("handle", 3)

    def test_dicts_are_read_only(self):
        table = TraitTable("x").add("counts", {"a": 1})
        counts = table.get("counts")
        assert counts["a"] == 1
        with pytest.raises(TypeError):
            counts["a"] = 2


def test_probe_trait_default():
    step = _Offering(TraitTable("x").add("present", 1))
    assert get_trait(step, "present") == 1
    assert probe_trait(step, "absent", default="fallback") == "fallback"
