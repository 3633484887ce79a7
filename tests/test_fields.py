from typing import List, Optional

import pytest
from pydantic import BaseModel, Field

from exportable.compiler import compile_exportables
from exportable.fields import deep_get, walk_fields
from exportable.types import MISSING


class ContactDoc(BaseModel):
    phone: Optional[str] = Field(default=None, json_schema_extra={"exportable": True})
    email: Optional[str] = None


class UserDoc(BaseModel):
    name: str = Field(json_schema_extra={"exportable": True})
    age: int = Field(default=0, json_schema_extra={"exportable": {"order": 1}})
    score: Optional[float] = Field(default=None, json_schema_extra={"exportable": True})
    contact: ContactDoc = Field(default_factory=ContactDoc)
    titles: List[str] = Field(default_factory=list, json_schema_extra={"exportable": {"header": "Titles"}})


class Node(BaseModel):
    label: str = Field(json_schema_extra={"exportable": True})
    parent: Optional["Node"] = None


Node.model_rebuild()


def test_pydantic_walker_flattens_nested_models():
    paths = [n.path for n in walk_fields(UserDoc)]
    assert paths == ["name", "age", "score", "contact.phone", "contact.email", "titles"]


def test_pydantic_kinds_and_defaults():
    nodes = {n.path: n for n in walk_fields(UserDoc)}
    assert nodes["name"].kind == "string"
    assert nodes["age"].kind == "number"
    assert nodes["age"].default == 0
    assert nodes["score"].kind == "number"
    assert nodes["contact.phone"].kind == "string"
    assert nodes["titles"].kind is None
    assert nodes["titles"].default is None


def test_pydantic_model_compiles():
    mapping = compile_exportables(UserDoc)
    assert set(mapping) == {"name", "age", "score", "contact.phone", "titles"}
    assert mapping["contact.phone"].format() == "NA"
    assert mapping["score"].format() == 0


def test_self_referencing_model_terminates():
    assert [n.path for n in walk_fields(Node)] == ["label"]


def test_dict_walker_treats_arrays_as_leaves():
    tree = {
        "tags": [str],
        "items": {"type": [{"sku": {"type": str}}], "exportable": True},
    }
    assert [n.path for n in walk_fields(tree)] == ["tags", "items"]


def test_unsupported_schema():
    with pytest.raises(TypeError):
        walk_fields(42)


# -------------------------------------------------------
# deep_get
# -------------------------------------------------------

class _Obj:
    def __init__(self, **kw):
        self.__dict__.update(kw)


def test_deep_get_on_mappings_and_objects():
    record = {"contact": _Obj(phone="123", address={"city": "Dar"})}
    assert deep_get(record, "contact.phone") == "123"
    assert deep_get(record, "contact.address.city") == "Dar"


def test_deep_get_missing_paths():
    record = {"contact": None, "name": "Amy"}
    assert deep_get(record, "contact.phone") is None
    assert deep_get(record, "nope", MISSING) is MISSING
    assert deep_get(record, "name.first", "x") == "x"


def test_deep_get_on_pydantic_document():
    doc = UserDoc(name="Amy", contact=ContactDoc(phone="555"))
    assert deep_get(doc, "contact.phone") == "555"
    assert deep_get(doc, "contact.email") is None
