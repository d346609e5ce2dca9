from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select, tuple_
from sqlalchemy.orm import Session

from tabapp.config import RemovalPolicy, settings
from tabapp.errors import ValidationError
from tabapp.models import Item, ItemVariant, OrderItem, OrderVariant, Tab, TabStatus
from tabapp.schemas import BillOrder
from tabapp.services.billing_cycle_service import lock_tab, select_or_create_current_bill, today
from tabapp.services.set_sync_service import clamp_negative, merge_quantities, overdrawn_rows, staged_rows

logger = logging.getLogger(__name__)

ITEM_KEYS = ('shop_id', 'tab_id', 'bill_id', 'item_id')
VARIANT_KEYS = ('shop_id', 'tab_id', 'bill_id', 'item_id', 'variant_id')


@dataclass(frozen=True)
class LedgerResult:
    bill_id: int
    item_lines: int
    variant_lines: int


def _ensure_orderable(tab: Tab, on: date) -> None:
    if tab.status == TabStatus.CLOSED:
        raise ValidationError('Tab is closed')
    if on < tab.start_date:
        raise ValidationError('Tab is not active yet')
    if on > tab.end_date:
        raise ValidationError('Tab is no longer active')


def _ensure_catalog_refs(db: Session, *, shop_id: int, order: BillOrder) -> None:
    item_ids = {item.id for item in order.items}
    variant_keys = {(item.id, variant.id) for item in order.items for variant in item.variants}

    known_items = set(
        db.execute(select(Item.id).where(Item.shop_id == shop_id, Item.id.in_(sorted(item_ids)))).scalars()
    )
    known_variants = set()
    if variant_keys:
        known_variants = {
            (row.item_id, row.id)
            for row in db.execute(
                select(ItemVariant.item_id, ItemVariant.id).where(
                    ItemVariant.shop_id == shop_id,
                    tuple_(ItemVariant.item_id, ItemVariant.id).in_(sorted(variant_keys)),
                )
            )
        }

    errors = {}
    missing_items = sorted(item_ids - known_items)
    if missing_items:
        errors['items'] = missing_items
    missing_variants = sorted(variant_keys - known_variants)
    if missing_variants:
        errors['variants'] = [{'item_id': item_id, 'variant_id': variant_id} for item_id, variant_id in missing_variants]
    if errors:
        raise ValidationError('Order references unknown items', details=errors)


def _delta_rows(order: BillOrder, *, shop_id: int, tab_id: int, bill_id: int, sign: int) -> tuple[list[dict], list[dict]]:
    scope = {'shop_id': shop_id, 'tab_id': tab_id, 'bill_id': bill_id}
    item_rows = []
    variant_rows = []
    for item in order.items:
        item_rows.append({**scope, 'item_id': item.id, 'quantity': sign * item.quantity})
        for variant in item.variants:
            variant_rows.append(
                {**scope, 'item_id': item.id, 'variant_id': variant.id, 'quantity': sign * variant.quantity}
            )
    return item_rows, variant_rows


def _apply(
    db: Session,
    *,
    shop_id: int,
    tab_id: int,
    order: BillOrder,
    sign: int,
    on: date | None,
    policy: RemovalPolicy,
) -> LedgerResult:
    on = on or today()
    tab = lock_tab(db, shop_id=shop_id, tab_id=tab_id)
    _ensure_orderable(tab, on)
    _ensure_catalog_refs(db, shop_id=shop_id, order=order)

    bill_id = select_or_create_current_bill(db, tab, on=on)
    item_rows, variant_rows = _delta_rows(order, shop_id=shop_id, tab_id=tab_id, bill_id=bill_id, sign=sign)

    with staged_rows(db, OrderItem, [*ITEM_KEYS, 'quantity'], item_rows) as staged_items, staged_rows(
        db, OrderVariant, [*VARIANT_KEYS, 'quantity'], variant_rows
    ) as staged_variants:
        if sign < 0 and policy == RemovalPolicy.REJECT:
            overdrawn = {
                'items': overdrawn_rows(db, OrderItem, staged_items, key_columns=ITEM_KEYS),
                'variants': overdrawn_rows(db, OrderVariant, staged_variants, key_columns=VARIANT_KEYS),
            }
            if overdrawn['items'] or overdrawn['variants']:
                raise ValidationError('Removal exceeds the quantity on the bill', details=overdrawn)

        item_lines = merge_quantities(db, OrderItem, staged_items, key_columns=ITEM_KEYS)
        variant_lines = 0
        if variant_rows:
            variant_lines = merge_quantities(db, OrderVariant, staged_variants, key_columns=VARIANT_KEYS)

        if sign < 0 and policy == RemovalPolicy.CLAMP:
            clamp_negative(db, OrderItem, staged_items, key_columns=ITEM_KEYS)
            clamp_negative(db, OrderVariant, staged_variants, key_columns=VARIANT_KEYS)

    return LedgerResult(bill_id=bill_id, item_lines=item_lines, variant_lines=variant_lines)


def add_order_to_tab(
    db: Session,
    *,
    shop_id: int,
    tab_id: int,
    order: BillOrder,
    on: date | None = None,
) -> LedgerResult:
    result = _apply(
        db, shop_id=shop_id, tab_id=tab_id, order=order, sign=1, on=on, policy=settings.order_removal_policy
    )
    logger.info('Added %s item lines to bill %s of tab %s/%s', result.item_lines, result.bill_id, shop_id, tab_id)
    return result


def remove_order_from_tab(
    db: Session,
    *,
    shop_id: int,
    tab_id: int,
    order: BillOrder,
    on: date | None = None,
    policy: RemovalPolicy | None = None,
) -> LedgerResult:
    result = _apply(
        db,
        shop_id=shop_id,
        tab_id=tab_id,
        order=order,
        sign=-1,
        on=on,
        policy=policy or settings.order_removal_policy,
    )
    logger.info('Removed %s item lines from bill %s of tab %s/%s', result.item_lines, result.bill_id, shop_id, tab_id)
    return result
