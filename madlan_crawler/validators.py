# madlan_crawler/validators.py
"""Sanity checks applied to an extracted property before it is stored."""
from typing import List, NamedTuple

from .schemas import PropertyInput


class ValidationIssue(NamedTuple):
    field: str
    message: str


_TRIMMED = ("id", "url", "city", "address", "neighborhood", "description",
            "contact_name", "contact_phone", "contact_agency")


def sanitize_property(prop: PropertyInput) -> PropertyInput:
    updates = {}
    for name in _TRIMMED:
        value = getattr(prop, name)
        if isinstance(value, str):
            updates[name] = value.strip() or (None if name not in ("id", "url", "city") else "")
    return prop.model_copy(update=updates)


def has_minimum_data(prop: PropertyInput) -> bool:
    """id, url, city and at least one of price / rooms / size."""
    return bool(prop.id and prop.url and prop.city and (prop.price or prop.rooms or prop.size))


def validate_property(prop: PropertyInput) -> List[ValidationIssue]:
    issues = []
    for name in ("id", "url", "city"):
        if not (getattr(prop, name) or "").strip():
            issues.append(ValidationIssue(name, f"{name} is required"))

    if prop.price is not None:
        if prop.price <= 0:
            issues.append(ValidationIssue("price", "price must be positive"))
        elif prop.price > 100_000_000:
            issues.append(ValidationIssue("price", "price is unrealistically high"))
    if prop.rooms is not None and not 0.5 <= prop.rooms <= 20:
        issues.append(ValidationIssue("rooms", "rooms must be between 0.5 and 20"))
    if prop.size is not None and not 0 < prop.size <= 1000:
        issues.append(ValidationIssue("size", "size must be between 0 and 1000 sqm"))
    if prop.floor is not None and not -3 <= prop.floor <= 50:
        issues.append(ValidationIssue("floor", "floor must be between -3 and 50"))
    if prop.total_floors is not None:
        if prop.total_floors <= 0:
            issues.append(ValidationIssue("total_floors", "total_floors must be positive"))
        elif prop.floor is not None and prop.floor > prop.total_floors:
            issues.append(ValidationIssue("floor", f"floor {prop.floor} is above total_floors {prop.total_floors}"))
    return issues


def completeness(prop: PropertyInput) -> int:
    """Percentage of descriptive fields that were filled in."""
    fields = ("price", "rooms", "size", "floor", "total_floors", "address", "neighborhood",
              "property_type", "description", "has_parking", "has_elevator", "has_balcony")
    filled = sum(1 for f in fields if getattr(prop, f) is not None)
    return round(filled * 100 / len(fields))
