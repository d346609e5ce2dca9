from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class UserRole(str, Enum):
    ADMIN = 'ADMIN'
    USER = 'USER'


class TabStatus(str, Enum):
    AWAITING_APPROVAL = 'AWAITING_APPROVAL'
    CONFIRMED = 'CONFIRMED'
    CLOSED = 'CLOSED'


class PaymentMethod(str, Enum):
    IN_PERSON = 'IN_PERSON'
    CHARTSTRING = 'CHARTSTRING'


class VerificationMethod(str, Enum):
    SPECIFY = 'SPECIFY'
    VOUCHER = 'VOUCHER'
    EMAIL = 'EMAIL'


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name='user_role'), nullable=False, default=UserRole.USER, server_default='USER'
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Shop(Base):
    __tablename__ = 'shops'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Location(Base):
    __tablename__ = 'locations'
    __table_args__ = (UniqueConstraint('shop_id', 'id', name='locations_shop_id_id_key'),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Item(Base):
    __tablename__ = 'items'
    __table_args__ = (UniqueConstraint('shop_id', 'id', name='items_shop_id_id_key'),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))


class ItemVariant(Base):
    __tablename__ = 'item_variants'
    __table_args__ = (
        UniqueConstraint('shop_id', 'item_id', 'id', name='item_variants_shop_item_id_key'),
        ForeignKeyConstraint(['shop_id', 'item_id'], ['items.shop_id', 'items.id'], ondelete='CASCADE'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0'))


class TabConfigMixin:
    """Editable tab configuration shared by tabs and their staged updates."""

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod, name='tab_payment_method'), nullable=False
    )
    organization: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    daily_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    daily_end_time: Mapped[time] = mapped_column(Time, nullable=False)
    active_days_of_wk: Mapped[int] = mapped_column(Integer, nullable=False)
    dollar_limit_per_order: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    verification_method: Mapped[VerificationMethod] = mapped_column(
        SQLEnum(VerificationMethod, name='tab_verification_method'), nullable=False
    )
    payment_details: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    billing_interval_days: Mapped[int] = mapped_column(Integer, nullable=False)


TAB_CONFIG_FIELDS = (
    'payment_method',
    'organization',
    'display_name',
    'start_date',
    'end_date',
    'daily_start_time',
    'daily_end_time',
    'active_days_of_wk',
    'dollar_limit_per_order',
    'verification_method',
    'payment_details',
    'billing_interval_days',
)


class Tab(TabConfigMixin, Base):
    __tablename__ = 'tabs'
    __table_args__ = (
        UniqueConstraint('shop_id', 'id', name='tabs_shop_id_id_key'),
        CheckConstraint('billing_interval_days > 0', name='tabs_billing_interval_positive'),
        CheckConstraint('start_date <= end_date', name='tabs_date_range'),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('shops.id', ondelete='CASCADE'), nullable=False)
    owner_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('users.id'), nullable=False)
    status: Mapped[TabStatus] = mapped_column(
        SQLEnum(TabStatus, name='tab_status'),
        nullable=False,
        default=TabStatus.AWAITING_APPROVAL,
        server_default=TabStatus.AWAITING_APPROVAL.value,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TabStagedUpdate(TabConfigMixin, Base):
    __tablename__ = 'tab_updates'
    __table_args__ = (
        ForeignKeyConstraint(['shop_id', 'tab_id'], ['tabs.shop_id', 'tabs.id'], ondelete='CASCADE'),
        CheckConstraint('billing_interval_days > 0', name='tab_updates_billing_interval_positive'),
    )

    shop_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    tab_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    verification_list: Mapped[list | None] = mapped_column(JSON)
    location_ids: Mapped[list | None] = mapped_column(JSON)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class TabUser(Base):
    __tablename__ = 'tab_users'
    __table_args__ = (
        ForeignKeyConstraint(['shop_id', 'tab_id'], ['tabs.shop_id', 'tabs.id'], ondelete='CASCADE'),
    )

    shop_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    tab_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), primary_key=True)


class TabLocation(Base):
    __tablename__ = 'tab_locations'
    __table_args__ = (
        ForeignKeyConstraint(['shop_id', 'tab_id'], ['tabs.shop_id', 'tabs.id'], ondelete='CASCADE'),
        ForeignKeyConstraint(['shop_id', 'location_id'], ['locations.shop_id', 'locations.id'], ondelete='CASCADE'),
    )

    shop_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    tab_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    location_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)


class TabBill(Base):
    __tablename__ = 'tab_bills'
    __table_args__ = (
        UniqueConstraint('shop_id', 'tab_id', 'id', name='tab_bills_shop_tab_id_key'),
        ForeignKeyConstraint(['shop_id', 'tab_id'], ['tabs.shop_id', 'tabs.id'], ondelete='CASCADE'),
        Index(
            'tab_bills_one_open_per_start',
            'shop_id',
            'tab_id',
            'start_date',
            unique=True,
            postgresql_where=text('is_paid = false'),
            sqlite_where=text('is_paid = 0'),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    shop_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tab_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')


class OrderItem(Base):
    __tablename__ = 'order_items'
    __table_args__ = (
        ForeignKeyConstraint(
            ['shop_id', 'tab_id', 'bill_id'],
            ['tab_bills.shop_id', 'tab_bills.tab_id', 'tab_bills.id'],
            ondelete='CASCADE',
        ),
        ForeignKeyConstraint(['shop_id', 'item_id'], ['items.shop_id', 'items.id'], ondelete='CASCADE'),
    )

    shop_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    tab_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    bill_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class OrderVariant(Base):
    __tablename__ = 'order_variants'
    __table_args__ = (
        ForeignKeyConstraint(
            ['shop_id', 'tab_id', 'bill_id', 'item_id'],
            ['order_items.shop_id', 'order_items.tab_id', 'order_items.bill_id', 'order_items.item_id'],
            ondelete='CASCADE',
        ),
        ForeignKeyConstraint(
            ['shop_id', 'item_id', 'variant_id'],
            ['item_variants.shop_id', 'item_variants.item_id', 'item_variants.id'],
            ondelete='CASCADE',
        ),
    )

    shop_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    tab_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    bill_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    variant_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True)
    actor_user_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('users.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    shop_id: Mapped[int | None] = mapped_column(BigInteger)
    tab_id: Mapped[int | None] = mapped_column(BigInteger)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
