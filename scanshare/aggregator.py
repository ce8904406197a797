"""Merge rules for counted scan items.

The same rules apply to the scanner's local item list and, mirrored onto
database rows, to deltas received by the session service.
"""
from typing import Callable, Iterable, TypeVar

from scanshare.models import ScanItem

Item = TypeVar("Item", bound=ScanItem)

DETAIL_FIELDS = ("internalCode", "productName", "price")

# Wire field name -> column name on scanshare.db_models.Scan
DB_DETAIL_FIELDS = {
    "internalCode": "internal_code",
    "productName": "product_name",
    "price": "price",
}


def present_details(source) -> dict:
    """Descriptive fields of ``source`` that carry a value."""
    values = {}
    for field in DETAIL_FIELDS:
        value = getattr(source, field)
        if value is not None:
            values[field] = value
    return values


def apply_details(target, source) -> None:
    """Overwrite descriptive fields of ``target`` with those present on ``source``."""
    for field, value in present_details(source).items():
        setattr(target, field, value)


def merge(
    items: list[Item],
    code: str,
    factory: Callable[..., Item] = ScanItem,
) -> tuple[list[Item], bool]:
    """Count one scan of ``code``.

    Returns a new list and whether ``code`` was new to it. The input list and
    its items are left untouched.
    """
    merged = [item.model_copy() for item in items]
    for item in merged:
        if item.code == code:
            item.quantity += 1
            return merged, False

    merged.append(factory(code=code, quantity=1))
    return merged, True


def group_by_code(incoming: Iterable[Item]) -> list[Item]:
    """Collapse a batch to one entry per code.

    Quantities are summed; for descriptive fields the last non-null value in
    input order wins. Groups keep the order in which codes first appear.
    """
    grouped: dict[str, Item] = {}
    for item in incoming:
        existing = grouped.get(item.code)
        if existing is None:
            grouped[item.code] = item.model_copy()
            continue
        existing.quantity += item.quantity
        apply_details(existing, item)
    return list(grouped.values())


def merge_delta(items: list[Item], incoming: Iterable[Item]) -> list[Item]:
    """Merge a batch of incoming items into ``items``, returning a new list."""
    merged = [item.model_copy() for item in items]
    by_code = {item.code: item for item in merged}

    for group in group_by_code(incoming):
        existing = by_code.get(group.code)
        if existing is None:
            merged.append(group)
            by_code[group.code] = group
            continue
        existing.quantity += group.quantity
        apply_details(existing, group)

    return merged
