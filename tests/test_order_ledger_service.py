from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from support import TAB_START, TabDatabaseTestCase
from tabapp.config import RemovalPolicy, settings
from tabapp.errors import NotFoundError, ValidationError
from tabapp.models import OrderItem, OrderVariant, TabBill
from tabapp.schemas import BillOrder
from tabapp.services import tab_service
from tabapp.services.order_ledger_service import add_order_to_tab, remove_order_from_tab


class OrderLedgerTests(TabDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.tab_id = self.create_tab()

    def _add(self, data: dict, on=TAB_START):
        return tab_service.add_order(
            self.db, self.owner_ctx, shop_id=self.shop.id, tab_id=self.tab_id, data=data, on=on
        )

    def _remove(self, data: dict, *, policy=None, on=TAB_START):
        return tab_service.remove_order(
            self.db, self.owner_ctx, shop_id=self.shop.id, tab_id=self.tab_id, data=data, on=on, policy=policy
        )

    def _item_quantity(self, item) -> int | None:
        return self.db.execute(
            select(OrderItem.quantity).where(OrderItem.tab_id == self.tab_id, OrderItem.item_id == item.id)
        ).scalar_one_or_none()

    def _variant_quantity(self) -> int | None:
        return self.db.execute(
            select(OrderVariant.quantity).where(
                OrderVariant.tab_id == self.tab_id, OrderVariant.variant_id == self.oat_milk.id
            )
        ).scalar_one_or_none()

    def test_adds_accumulate_and_removal_returns_to_zero(self) -> None:
        first = self._add(self.order(2))
        second = self._add(self.order(3))
        self.assertEqual(first.bill_id, second.bill_id)
        self.assertEqual(self._item_quantity(self.coffee), 5)

        self._remove(self.order(5))
        self.assertEqual(self._item_quantity(self.coffee), 0)

    def test_variants_accumulate_with_their_item(self) -> None:
        variants = [{'id': self.oat_milk.id, 'quantity': 1}]
        self._add(self.order(1, variants=variants))
        result = self._add(self.order(1, variants=variants))

        self.assertEqual(result.variant_lines, 1)
        self.assertEqual(self._item_quantity(self.coffee), 2)
        self.assertEqual(self._variant_quantity(), 2)

    def test_zero_quantity_item_carries_only_its_variants(self) -> None:
        self._add(self.order(1))
        self._add(self.order(0, variants=[{'id': self.oat_milk.id, 'quantity': 1}]))

        self.assertEqual(self._item_quantity(self.coffee), 1)
        self.assertEqual(self._variant_quantity(), 1)

    def test_variant_quantity_must_be_positive(self) -> None:
        with self.assertRaises(ValidationError):
            self._add(self.order(1, variants=[{'id': self.oat_milk.id, 'quantity': 0}]))
        self.assertEqual(self.count(TabBill, tab_id=self.tab_id), 0)

    def test_order_with_several_items(self) -> None:
        self._add({'items': [{'id': self.coffee.id, 'quantity': 1}, {'id': self.bagel.id, 'quantity': 4}]})
        self.assertEqual(self._item_quantity(self.coffee), 1)
        self.assertEqual(self._item_quantity(self.bagel), 4)

    def test_reject_policy_leaves_bill_unchanged(self) -> None:
        self._add(self.order(1))

        with self.assertRaises(ValidationError) as raised:
            self._remove(self.order(3), policy=RemovalPolicy.REJECT)

        self.assertEqual(raised.exception.details['items'][0]['current'], 1)
        self.assertEqual(raised.exception.details['items'][0]['delta'], -3)
        self.assertEqual(self._item_quantity(self.coffee), 1)

    def test_reject_policy_is_the_default(self) -> None:
        self._add(self.order(1))
        with self.assertRaises(ValidationError):
            self._remove(self.order(2))
        self.assertEqual(self._item_quantity(self.coffee), 1)

    def test_clamp_policy_floors_at_zero(self) -> None:
        self._add(self.order(1, item=self.bagel))
        self._remove(self.order(3, item=self.bagel), policy=RemovalPolicy.CLAMP)
        self.assertEqual(self._item_quantity(self.bagel), 0)

    def test_allow_negative_policy_stores_the_raw_result(self) -> None:
        self._add(self.order(1))
        self._remove(self.order(3), policy=RemovalPolicy.ALLOW_NEGATIVE)
        self.assertEqual(self._item_quantity(self.coffee), -2)

    def test_configured_policy_applies_when_none_given(self) -> None:
        self._add(self.order(1))
        with patch.object(settings, 'order_removal_policy', RemovalPolicy.CLAMP):
            self._remove(self.order(4))
        self.assertEqual(self._item_quantity(self.coffee), 0)

    def test_closed_tab_rejects_orders(self) -> None:
        tab_service.close_tab(self.db, self.owner_ctx, shop_id=self.shop.id, tab_id=self.tab_id)

        with self.assertRaises(ValidationError):
            self._add(self.order(1))
        self.assertEqual(self.count(TabBill, tab_id=self.tab_id), 0)

    def test_orders_after_the_tab_ends_are_rejected(self) -> None:
        tab_id = self.create_tab(end_date=TAB_START + timedelta(days=3))
        with self.assertRaises(ValidationError):
            tab_service.add_order(
                self.db,
                self.owner_ctx,
                shop_id=self.shop.id,
                tab_id=tab_id,
                data=self.order(1),
                on=TAB_START + timedelta(days=4),
            )

    def test_orders_before_the_tab_starts_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self._add(self.order(1), on=TAB_START - timedelta(days=3))
        self.assertEqual(self.count(TabBill, tab_id=self.tab_id), 0)

    def test_unknown_item_is_rejected_before_a_bill_opens(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            self._add({'items': [{'id': 999999, 'quantity': 1}]})

        self.assertEqual(raised.exception.details, {'items': [999999]})
        self.assertEqual(self.count(TabBill, tab_id=self.tab_id), 0)

    def test_variant_of_another_item_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            self._add(self.order(1, item=self.bagel, variants=[{'id': self.oat_milk.id, 'quantity': 1}]))
        self.assertEqual(
            raised.exception.details,
            {'variants': [{'item_id': self.bagel.id, 'variant_id': self.oat_milk.id}]},
        )

    def test_empty_order_is_invalid(self) -> None:
        with self.assertRaises(ValidationError):
            self._add({'items': []})

    def test_missing_tab(self) -> None:
        with self.assertRaises(NotFoundError):
            add_order_to_tab(self.db, shop_id=self.shop.id, tab_id=424242, order=BillOrder(**self.order(1)), on=TAB_START)
        self.db.rollback()

    def test_ledger_functions_join_the_callers_transaction(self) -> None:
        order = BillOrder(**self.order(2))
        add_order_to_tab(self.db, shop_id=self.shop.id, tab_id=self.tab_id, order=order, on=TAB_START)
        remove_order_from_tab(
            self.db, shop_id=self.shop.id, tab_id=self.tab_id, order=BillOrder(**self.order(1)), on=TAB_START
        )
        self.db.rollback()

        self.assertIsNone(self._item_quantity(self.coffee))
        self.assertEqual(self.count(TabBill, tab_id=self.tab_id), 0)


if __name__ == '__main__':
    unittest.main()
