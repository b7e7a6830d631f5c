import pytest

from psm import catalog
from psm.catalog import InstanceClass, get_class, instance_types_for, list_classes, register_class
from psm.errors import UnknownInstanceClass


@pytest.fixture(autouse=True)
def _isolated_registry(monkeypatch):
    monkeypatch.setattr("psm.catalog._registry", dict(catalog._registry))


def test_builtin_classes():
    names = {c.name for c in list_classes()}
    assert {"2c2g", "2c8g", "4c8g", "2c16g", "4c16g", "4c32g", "8c32g"} <= names


def test_get_class():
    cls = get_class("4c16g")
    assert cls.vcpus == 4
    assert cls.memory_gib == 16
    assert cls.label == "4 vCPU / 16 GiB"
    assert "m6a.xlarge" in cls.instance_types


def test_unknown_class():
    with pytest.raises(UnknownInstanceClass) as exc:
        instance_types_for("3c7g")
    assert exc.value.name == "3c7g"


def test_register_overrides_existing():
    register_class(InstanceClass("4c16g", 4, 16, ("m7a.xlarge",)))
    assert instance_types_for("4c16g") == ["m7a.xlarge"]


def test_overlay_shadows_without_registering():
    extra = {
        "4c16g": InstanceClass("4c16g", 4, 16, ("m7a.xlarge",)),
        "1c1g": InstanceClass("1c1g", 1, 1, ("t3.micro",)),
    }

    assert instance_types_for("4c16g", extra) == ["m7a.xlarge"]
    assert get_class("1c1g", extra).vcpus == 1
    assert {c.name for c in list_classes(extra)} >= {"1c1g", "2c2g"}
    assert instance_types_for("4c16g")[0] == "m6a.xlarge"
    with pytest.raises(UnknownInstanceClass):
        get_class("1c1g")
