from __future__ import annotations

import unittest
from datetime import date, time
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tabapp.auth import Principal, RequestContext, Role
from tabapp.db import build_engine
from tabapp.models import Base, Item, ItemVariant, Location, Shop, TabBill, User, UserRole
from tabapp.services import tab_service

TAB_START = date(2026, 1, 5)
TAB_END = date(2027, 12, 31)


def make_session_factory(url: str = 'sqlite://') -> sessionmaker:
    if url == 'sqlite://':
        engine = build_engine(url, poolclass=StaticPool)
    else:
        # File databases get a connection per thread and wait on each other's locks.
        engine = build_engine(url, connect_args={'check_same_thread': False, 'timeout': 30})
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def tab_payload(**overrides) -> dict:
    payload = {
        'payment_method': 'IN_PERSON',
        'organization': 'Chess Club',
        'display_name': 'Chess Club Tab',
        'start_date': TAB_START,
        'end_date': TAB_END,
        'daily_start_time': time(8, 0),
        'daily_end_time': time(17, 0),
        'active_days_of_wk': 0b0011111,
        'dollar_limit_per_order': Decimal('50.00'),
        'verification_method': 'EMAIL',
        'payment_details': '',
        'billing_interval_days': 7,
        'verification_list': ['a@example.com', 'b@example.com'],
    }
    payload.update(overrides)
    return payload


def context_for(user: User) -> RequestContext:
    return RequestContext(
        principal=Principal(id=user.id, email=user.email, role=Role(user.role.value), active=user.active),
        ip='127.0.0.1',
    )


class TabDatabaseTestCase(unittest.TestCase):
    """Fresh database (in-memory by default) with one shop, its owner, a customer and a small catalog."""

    def database_url(self) -> str:
        return 'sqlite://'

    def setUp(self) -> None:
        self.session_factory = make_session_factory(self.database_url())
        self.addCleanup(self.session_factory.kw['bind'].dispose)
        self.db = self.session_factory()
        self.addCleanup(self.db.close)

        self.owner = User(email='owner@example.com', name='Owner', role=UserRole.USER, active=True)
        self.customer = User(email='customer@example.com', name='Customer', role=UserRole.USER, active=True)
        self.admin = User(email='admin@example.com', name='Admin', role=UserRole.ADMIN, active=True)
        self.db.add_all([self.owner, self.customer, self.admin])
        self.db.flush()

        self.shop = Shop(owner_id=self.owner.id, name='Campus Cafe')
        self.other_shop = Shop(owner_id=self.admin.id, name='Other Cafe')
        self.db.add_all([self.shop, self.other_shop])
        self.db.flush()

        self.location = Location(shop_id=self.shop.id, name='Main Hall')
        self.other_location = Location(shop_id=self.other_shop.id, name='Elsewhere')
        self.coffee = Item(shop_id=self.shop.id, name='Coffee', base_price=Decimal('2.00'))
        self.bagel = Item(shop_id=self.shop.id, name='Bagel', base_price=Decimal('3.00'))
        self.db.add_all([self.location, self.other_location, self.coffee, self.bagel])
        self.db.flush()

        self.oat_milk = ItemVariant(shop_id=self.shop.id, item_id=self.coffee.id, name='Oat milk', price=Decimal('1.00'))
        self.db.add(self.oat_milk)
        self.db.commit()

        self.owner_ctx = context_for(self.owner)
        self.customer_ctx = context_for(self.customer)
        self.admin_ctx = context_for(self.admin)

    def create_tab(self, **overrides) -> int:
        return tab_service.create_tab(self.db, self.customer_ctx, shop_id=self.shop.id, data=tab_payload(**overrides))

    def order(self, quantity: int, *, item=None, variants=None) -> dict:
        item = item or self.coffee
        return {'items': [{'id': item.id, 'quantity': quantity, 'variants': variants or []}]}

    def bills(self, tab_id: int) -> list[TabBill]:
        return list(
            self.db.execute(
                select(TabBill)
                .where(TabBill.shop_id == self.shop.id, TabBill.tab_id == tab_id)
                .order_by(TabBill.start_date.asc(), TabBill.id.asc())
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def count(self, model, **filters) -> int:
        stmt = select(func.count()).select_from(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        return self.db.execute(stmt).scalar_one()
