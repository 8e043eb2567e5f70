# tests/test_validators.py
import pytest

from madlan_crawler.errors import ExtractionError
from madlan_crawler.schemas import PropertyBundle, PropertyInput
from madlan_crawler.services import prepare_bundle
from madlan_crawler.validators import (
    completeness, has_minimum_data, sanitize_property, validate_property,
)


def _prop(**fields):
    values = dict(id="p1", url="https://www.madlan.co.il/listings/p1", city="חיפה", price=1_500_000)
    values.update(fields)
    return PropertyInput(**values)


def test_sanitize_trims_and_blanks():
    prop = sanitize_property(_prop(address="  הרצל 10 ", description="   "))
    assert prop.address == "הרצל 10"
    assert prop.description is None


def test_minimum_data():
    assert has_minimum_data(_prop())
    assert has_minimum_data(_prop(price=None, rooms=3))
    assert not has_minimum_data(_prop(price=None))
    assert not has_minimum_data(_prop(city=""))


def test_valid_property_has_no_issues():
    assert validate_property(_prop(rooms=4, size=100, floor=3, total_floors=8)) == []


@pytest.mark.parametrize("fields,field", [
    ({"price": 0}, "price"),
    ({"price": 150_000_000}, "price"),
    ({"rooms": 25}, "rooms"),
    ({"size": 5000}, "size"),
    ({"floor": 60}, "floor"),
    ({"total_floors": 0}, "total_floors"),
    ({"floor": 9, "total_floors": 8}, "floor"),
])
def test_out_of_range_values(fields, field):
    issues = validate_property(_prop(**fields))
    assert [i.field for i in issues] == [field]


def test_completeness():
    assert completeness(_prop()) == 8
    full = _prop(rooms=4, size=100, floor=1, total_floors=4, address="a", neighborhood="b",
                 property_type="דירה", description="d", has_parking=True, has_elevator=False,
                 has_balcony=True)
    assert completeness(full) == 100


def test_prepare_bundle_rejects_unusable_pages():
    with pytest.raises(ExtractionError):
        prepare_bundle(PropertyBundle(property=_prop(price=None)))
    with pytest.raises(ExtractionError, match="rooms"):
        prepare_bundle(PropertyBundle(property=_prop(rooms=40)))
    bundle = prepare_bundle(PropertyBundle(property=_prop(address=" x ")))
    assert bundle.property.address == "x"
