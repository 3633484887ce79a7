import functools
import sys
from datetime import datetime

import pytest

from exportable.compiler import (
    ORDER_LAST,
    ExportableRegistry,
    compile_exportables,
    exportables_for,
    is_producer,
    make_formatter,
    registry,
)
from exportable.config import ExportSettings
from exportable.fields import start_case
from exportable.pipeline import export_records, sorted_descriptors


def user_tree():
    return {
        "name": {"type": str, "exportable": True},
        "contact": {
            "phone": {"type": str, "exportable": True},
            "email": {"type": str},
        },
        "age": {"type": int, "exportable": True},
        "titles": {"type": [str], "exportable": {"header": "Titles"}},
    }


# -------------------------------------------------------
# Field collection
# -------------------------------------------------------

def test_collects_exactly_the_exportable_leaves():
    mapping = compile_exportables(user_tree())

    assert set(mapping) == {"name", "contact.phone", "age", "titles"}
    assert "contact.email" not in mapping


def test_no_marker_means_nothing_exported():
    mapping = compile_exportables({"name": {"type": str}, "age": int})
    assert dict(mapping) == {}


def test_malformed_markers_are_skipped_silently():
    tree = {
        "a": {"type": str, "exportable": "yes"},
        "b": {"type": int, "exportable": 1},
        "c": {"type": str, "exportable": ["x"]},
        "d": {"type": str, "exportable": False},
        "e": {"type": str, "exportable": {}},
    }
    mapping = compile_exportables(tree)
    assert list(mapping) == ["e"]


def test_mapping_is_read_only():
    mapping = compile_exportables(user_tree())
    with pytest.raises(TypeError):
        mapping["other"] = mapping["age"]


# -------------------------------------------------------
# Defaults
# -------------------------------------------------------

def test_default_options_for_number_field():
    age = compile_exportables(user_tree())["age"]

    assert age.path == "age"
    assert age.header == "Age"
    assert age.order == ORDER_LAST == sys.maxsize
    assert callable(age.format)
    assert age.format(4) == 4
    assert age.format() == 0
    assert age.format(None) == 0


def test_default_options_for_string_field():
    name = compile_exportables(user_tree())["name"]
    assert name.format() == "NA"
    assert name.format("Amy") == "Amy"


def test_nested_header_uses_last_segment():
    mapping = compile_exportables(user_tree())
    assert mapping["contact.phone"].header == "Phone"
    assert mapping["titles"].header == "Titles"


def test_non_ascii_names_keep_their_headers():
    tree = {
        "café": {"type": str, "exportable": True},
        "名前": {"type": str, "exportable": True},
        "年齢": {"type": int, "exportable": True},
    }
    mapping = compile_exportables(tree)
    assert [d.header for d in mapping.values()] == ["Café", "名前", "年齢"]

    out = export_records([{"café": "x", "名前": "Amy", "年齢": 3}], tree).read()
    assert out == "Café,名前,年齢\nx,Amy,3\n"


def test_header_falls_back_to_raw_segment():
    mapping = compile_exportables({"__": {"type": str, "exportable": True}})
    assert mapping["__"].header == "__"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("age", "Age"),
        ("firstName", "First Name"),
        ("updated_at", "Updated At"),
        ("HTTPServer", "HTTP Server"),
        ("phone2", "Phone 2"),
        ("café", "Café"),
        ("名前", "名前"),
        ("straßeName", "Straße Name"),
        ("ÉtatCivil", "État Civil"),
    ],
)
def test_start_case(raw, expected):
    assert start_case(raw) == expected
    assert start_case(raw) == start_case(raw)


def test_untyped_field_defaults_to_none():
    mapping = compile_exportables({"titles": {"type": [str], "exportable": True}})
    assert mapping["titles"].format() is None


def test_default_resolution_order():
    tree = {
        "explicit": {"type": int, "default": 7, "exportable": {"default": 9}},
        "schema": {"type": int, "default": 7, "exportable": True},
        "zero": {"type": int, "exportable": {"default": 0}},
    }
    mapping = compile_exportables(tree)
    assert mapping["explicit"].format() == 9
    assert mapping["schema"].format() == 7
    assert mapping["zero"].format() == 0


def test_settings_control_missing_values():
    settings = ExportSettings(number_missing_value=-1, string_missing_value="")
    mapping = compile_exportables(user_tree(), settings)
    assert mapping["age"].format() == -1
    assert mapping["name"].format() == ""


# -------------------------------------------------------
# Formatters
# -------------------------------------------------------

def test_configured_options_override_defaults():
    tree = {
        "name": {
            "type": str,
            "exportable": {
                "header": "Full Name",
                "order": 1,
                "default": "anon",
                "format": lambda v, r: v.upper(),
            },
        }
    }
    name = compile_exportables(tree)["name"]
    assert name.header == "Full Name"
    assert name.order == 1
    assert name.format("amy") == "AMY"
    assert name.format() == "ANON"


def test_formatter_receives_full_record():
    fmt = make_formatter(lambda v, r: f"{v}-{r['x']}", None, ExportSettings())
    assert fmt("a", {"x": 1}) == "a-1"


def test_single_argument_formatter():
    fmt = make_formatter(lambda v: v * 2, 0, ExportSettings())
    assert fmt(3, {"ignored": True}) == 6


def test_producer_value_is_invoked():
    fmt = make_formatter(None, None, ExportSettings())
    assert fmt(lambda: 3) == 3


def test_default_producer_is_invoked():
    stamp = datetime(2024, 1, 1)
    fmt = make_formatter(None, functools.partial(lambda: stamp), ExportSettings())
    assert fmt() == stamp
    assert is_producer(datetime.now)


def test_classes_and_callable_values_are_not_invoked():
    class Status:
        def __call__(self):
            raise AssertionError("called")

    class Record:
        def label(self):
            return "called"

    fmt = make_formatter(None, None, ExportSettings())
    status = Status()
    bound = Record().label

    assert fmt(Status) is Status
    assert fmt(status) is status
    assert fmt(bound) is bound
    assert not is_producer(lambda v: v)


def test_none_result_keeps_value_but_other_falsy_results_pass():
    keep = make_formatter(lambda v, r: None, None, ExportSettings())
    zero = make_formatter(lambda v, r: 0, None, ExportSettings())
    empty = make_formatter(lambda v, r: "", None, ExportSettings())

    assert keep(5) == 5
    assert zero(5) == 0
    assert empty("x") == ""


def test_legacy_falsy_fallback():
    settings = ExportSettings(falsy_format_fallback=True)
    zero = make_formatter(lambda v, r: 0, None, settings)
    assert zero(5) == 5


def test_descriptor_independent_of_source_tree():
    tree = user_tree()
    tree["titles"]["exportable"]["header"] = "Original"
    mapping = compile_exportables(tree)

    tree["titles"]["exportable"]["header"] = "Changed"
    tree["titles"]["exportable"]["format"] = lambda v, r: "changed"

    assert mapping["titles"].header == "Original"
    assert mapping["titles"].format(["a"]) == ["a"]


# -------------------------------------------------------
# Ordering
# -------------------------------------------------------

def test_unordered_fields_sort_last_and_stable():
    tree = {
        "a": {"type": str, "exportable": True},
        "b": {"type": str, "exportable": {"order": 2}},
        "c": {"type": str, "exportable": True},
        "d": {"type": str, "exportable": {"order": 1}},
        "e": {"type": str, "exportable": True},
    }
    first = [d.path for d in sorted_descriptors(compile_exportables(tree))]
    second = [d.path for d in sorted_descriptors(compile_exportables(tree))]

    assert first == ["d", "b", "a", "c", "e"]
    assert first == second


def test_order_zero_is_an_explicit_order():
    tree = {
        "a": {"type": str, "exportable": True},
        "b": {"type": str, "exportable": {"order": 0}},
    }
    assert [d.path for d in sorted_descriptors(compile_exportables(tree))] == ["b", "a"]


def test_unusable_order_sorts_last():
    tree = {
        "a": {"type": str, "exportable": {"order": "first"}},
        "b": {"type": str, "exportable": {"order": [1]}},
        "c": {"type": str, "exportable": {"order": True}},
        "d": {"type": str, "exportable": {"order": 1.5}},
        "e": {"type": str, "exportable": {"order": 1}},
    }
    mapping = compile_exportables(tree)

    assert mapping["a"].order == ORDER_LAST
    assert mapping["b"].order == ORDER_LAST
    assert mapping["c"].order == ORDER_LAST
    assert mapping["d"].order == 1.5
    assert [d.path for d in sorted_descriptors(mapping)] == ["e", "d", "a", "b", "c"]


# -------------------------------------------------------
# Registry
# -------------------------------------------------------

def test_attach_is_idempotent():
    reg = ExportableRegistry(settings=ExportSettings())
    tree = user_tree()

    first = reg.attach(tree)
    second = reg.attach(tree)

    assert first is second
    assert reg.is_attached(tree)
    assert tree == user_tree()


def test_registry_keeps_schemas_apart():
    reg = ExportableRegistry(settings=ExportSettings())
    one = reg.attach({"a": {"type": str, "exportable": True}})
    two = reg.attach({"b": {"type": str, "exportable": True}})
    assert list(one) == ["a"]
    assert list(two) == ["b"]

    reg.clear()
    assert reg.get({"a": {"type": str, "exportable": True}}) is None


def test_explicit_settings_bypass_cached_mapping():
    tree = {"age": {"type": int, "exportable": True}}
    settings = ExportSettings(number_missing_value=-1)

    out = export_records([{"age": None}], tree, settings=settings).read()
    assert out == "Age\n-1\n"

    assert exportables_for(tree, settings)["age"].format() == -1
    assert exportables_for(tree)["age"].format() == registry.settings.number_missing_value
    assert exportables_for(tree, registry.settings) is exportables_for(tree)
