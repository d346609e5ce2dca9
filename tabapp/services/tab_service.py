from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.orm import Session

from tabapp.auth import AuthResource, RequestContext, TabAction, is_admin_role
from tabapp.config import RemovalPolicy
from tabapp.db import atomic
from tabapp.errors import NotFoundError, ValidationError, storage_errors, validate_input
from tabapp.models import (
    TAB_CONFIG_FIELDS,
    Item,
    ItemVariant,
    Location,
    OrderItem,
    OrderVariant,
    Shop,
    Tab,
    TabBill,
    TabLocation,
    TabStagedUpdate,
    TabStatus,
    TabUser,
)
from tabapp.schemas import BillOrder, TabCreate, TabUpdate, VerificationList
from tabapp.services.audit_service import log_audit
from tabapp.services.billing_cycle_service import today
from tabapp.services.order_ledger_service import LedgerResult, add_order_to_tab, remove_order_from_tab
from tabapp.services.set_sync_service import SyncResult, dialect_insert, sync_membership

logger = logging.getLogger(__name__)


def _shop_owner_id(db: Session, shop_id: int) -> int:
    owner_id = db.execute(select(Shop.owner_id).where(Shop.id == shop_id)).scalar_one_or_none()
    if owner_id is None:
        raise NotFoundError('Shop not found')
    return owner_id


def _get_tab(db: Session, *, shop_id: int, tab_id: int) -> Tab:
    tab = db.execute(
        select(Tab).where(Tab.shop_id == shop_id, Tab.id == tab_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not tab:
        raise NotFoundError('Tab not found')
    return tab


def _authorize_shop(db: Session, ctx: RequestContext, shop_id: int, action: TabAction) -> None:
    resource = AuthResource(shop_id=shop_id, shop_owner_id=_shop_owner_id(db, shop_id))
    ctx.authorize(resource, action)


def _authorize_tab(db: Session, ctx: RequestContext, shop_id: int, tab_id: int, action: TabAction) -> Tab:
    shop_owner_id = _shop_owner_id(db, shop_id)
    tab = _get_tab(db, shop_id=shop_id, tab_id=tab_id)
    ctx.authorize(
        AuthResource(shop_id=shop_id, shop_owner_id=shop_owner_id, tab_id=tab.id, tab_owner_id=tab.owner_id),
        action,
    )
    return tab


def _sync_verification_list(db: Session, *, shop_id: int, tab_id: int, emails: list[str]) -> SyncResult:
    return sync_membership(
        db, TabUser, scope={'shop_id': shop_id, 'tab_id': tab_id}, key_column='email', keys=emails
    )


def _sync_locations(db: Session, *, shop_id: int, tab_id: int, location_ids: list[int]) -> SyncResult:
    return sync_membership(
        db, TabLocation, scope={'shop_id': shop_id, 'tab_id': tab_id}, key_column='location_id', keys=location_ids
    )


def create_tab(db: Session, ctx: RequestContext, *, shop_id: int, data: TabCreate | dict) -> int:
    data = validate_input(TabCreate, data)
    with storage_errors(), atomic(db):
        _authorize_shop(db, ctx, shop_id, TabAction.CREATE)
        owner_id = ctx.principal.id
        if data.owner_id is not None and is_admin_role(ctx.principal.role):
            owner_id = data.owner_id

        tab = Tab(shop_id=shop_id, owner_id=owner_id, status=TabStatus.AWAITING_APPROVAL, **data.config_values())
        db.add(tab)
        db.flush()
        tab_id = tab.id

        _sync_verification_list(db, shop_id=shop_id, tab_id=tab_id, emails=data.verification_list)
        _sync_locations(db, shop_id=shop_id, tab_id=tab_id, location_ids=data.location_ids)
        log_audit(db, ctx, action='TAB_CREATED', shop_id=shop_id, tab_id=tab_id)

    logger.info('Created tab %s/%s for user %s', shop_id, tab_id, owner_id)
    return tab_id


def submit_update(db: Session, ctx: RequestContext, *, shop_id: int, tab_id: int, data: TabUpdate | dict) -> None:
    """Stage a full replacement of the tab's configuration for approval.

    The verification list and the locations, when given, are applied to the
    live tab right away; only the configuration fields wait for approval.
    """
    data = validate_input(TabUpdate, data)
    with storage_errors(), atomic(db):
        tab = _authorize_tab(db, ctx, shop_id, tab_id, TabAction.UPDATE)
        if tab.status == TabStatus.CLOSED:
            raise ValidationError('Tab is closed')

        values = {
            **data.config_values(),
            'verification_list': data.verification_list,
            'location_ids': data.location_ids,
            'submitted_at': func.now(),
        }
        stmt = dialect_insert(db, TabStagedUpdate).values(shop_id=shop_id, tab_id=tab_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['shop_id', 'tab_id'],
            set_={name: stmt.excluded[name] for name in values},
        )
        db.execute(stmt)

        if data.verification_list is not None:
            _sync_verification_list(db, shop_id=shop_id, tab_id=tab_id, emails=data.verification_list)
        if data.location_ids is not None:
            _sync_locations(db, shop_id=shop_id, tab_id=tab_id, location_ids=data.location_ids)
        log_audit(db, ctx, action='TAB_UPDATE_SUBMITTED', shop_id=shop_id, tab_id=tab_id)

    logger.info('Staged update for tab %s/%s', shop_id, tab_id)


def approve_tab(db: Session, ctx: RequestContext, *, shop_id: int, tab_id: int) -> None:
    """Apply the staged update, if any, and confirm the tab."""
    with storage_errors(), atomic(db):
        tab = _authorize_tab(db, ctx, shop_id, tab_id, TabAction.APPROVE)
        if tab.status == TabStatus.CLOSED:
            raise ValidationError('Tab is closed')

        staged = TabStagedUpdate.__table__
        tabs = Tab.__table__
        staged_for_tab = and_(staged.c.shop_id == tabs.c.shop_id, staged.c.tab_id == tabs.c.id)
        applied = db.execute(
            update(tabs)
            .where(
                tabs.c.shop_id == shop_id,
                tabs.c.id == tab_id,
                exists(select(1).select_from(staged).where(staged_for_tab)),
            )
            .values({name: select(staged.c[name]).where(staged_for_tab).scalar_subquery() for name in TAB_CONFIG_FIELDS})
        ).rowcount

        confirmed = db.execute(
            update(tabs).where(tabs.c.shop_id == shop_id, tabs.c.id == tab_id).values(status=TabStatus.CONFIRMED)
        ).rowcount
        if confirmed == 0:
            raise NotFoundError('Tab not found')

        db.execute(delete(staged).where(staged.c.shop_id == shop_id, staged.c.tab_id == tab_id))
        db.expire(tab)
        log_audit(db, ctx, action='TAB_APPROVED', shop_id=shop_id, tab_id=tab_id, metadata={'applied_update': bool(applied)})

    logger.info('Approved tab %s/%s (staged update applied: %s)', shop_id, tab_id, bool(applied))


def close_tab(db: Session, ctx: RequestContext, *, shop_id: int, tab_id: int) -> None:
    with storage_errors(), atomic(db):
        tab = _authorize_tab(db, ctx, shop_id, tab_id, TabAction.CLOSE)
        closed = db.execute(
            update(Tab.__table__)
            .where(Tab.__table__.c.shop_id == shop_id, Tab.__table__.c.id == tab_id)
            .values(status=TabStatus.CLOSED)
        ).rowcount
        if closed == 0:
            raise NotFoundError('Tab not found')

        db.execute(
            delete(TabStagedUpdate.__table__).where(
                TabStagedUpdate.__table__.c.shop_id == shop_id, TabStagedUpdate.__table__.c.tab_id == tab_id
            )
        )
        db.expire(tab)
        log_audit(db, ctx, action='TAB_CLOSED', shop_id=shop_id, tab_id=tab_id)

    logger.info('Closed tab %s/%s', shop_id, tab_id)


def mark_bill_paid(
    db: Session,
    ctx: RequestContext,
    *,
    shop_id: int,
    tab_id: int,
    bill_id: int,
    on: date | None = None,
) -> None:
    """Close a bill: mark it paid and end its window on ``on`` (today by default)."""
    on = on or today()
    with storage_errors(), atomic(db):
        _authorize_tab(db, ctx, shop_id, tab_id, TabAction.MARK_BILL_PAID)
        bills = TabBill.__table__
        paid = db.execute(
            update(bills)
            .where(bills.c.shop_id == shop_id, bills.c.tab_id == tab_id, bills.c.id == bill_id)
            .values(is_paid=True, end_date=on)
        ).rowcount
        if paid == 0:
            raise NotFoundError('Bill not found')
        log_audit(db, ctx, action='TAB_BILL_PAID', shop_id=shop_id, tab_id=tab_id, metadata={'bill_id': bill_id})

    logger.info('Marked bill %s of tab %s/%s paid on %s', bill_id, shop_id, tab_id, on)


def add_order(
    db: Session,
    ctx: RequestContext,
    *,
    shop_id: int,
    tab_id: int,
    data: BillOrder | dict,
    on: date | None = None,
) -> LedgerResult:
    order = validate_input(BillOrder, data)
    with storage_errors(), atomic(db):
        _authorize_tab(db, ctx, shop_id, tab_id, TabAction.ORDER)
        result = add_order_to_tab(db, shop_id=shop_id, tab_id=tab_id, order=order, on=on)
        log_audit(
            db, ctx, action='TAB_ORDER_ADDED', shop_id=shop_id, tab_id=tab_id, metadata={'bill_id': result.bill_id}
        )
    return result


def remove_order(
    db: Session,
    ctx: RequestContext,
    *,
    shop_id: int,
    tab_id: int,
    data: BillOrder | dict,
    on: date | None = None,
    policy: RemovalPolicy | None = None,
) -> LedgerResult:
    order = validate_input(BillOrder, data)
    with storage_errors(), atomic(db):
        _authorize_tab(db, ctx, shop_id, tab_id, TabAction.ORDER)
        result = remove_order_from_tab(db, shop_id=shop_id, tab_id=tab_id, order=order, on=on, policy=policy)
        log_audit(
            db, ctx, action='TAB_ORDER_REMOVED', shop_id=shop_id, tab_id=tab_id, metadata={'bill_id': result.bill_id}
        )
    return result


def set_verification_list(
    db: Session,
    ctx: RequestContext,
    *,
    shop_id: int,
    tab_id: int,
    data: VerificationList | dict,
) -> SyncResult:
    data = validate_input(VerificationList, data)
    with storage_errors(), atomic(db):
        tab = _authorize_tab(db, ctx, shop_id, tab_id, TabAction.UPDATE)
        if tab.status == TabStatus.CLOSED:
            raise ValidationError('Tab is closed')
        result = _sync_verification_list(db, shop_id=shop_id, tab_id=tab_id, emails=data.emails)
        log_audit(
            db,
            ctx,
            action='TAB_VERIFICATION_LIST_SET',
            shop_id=shop_id,
            tab_id=tab_id,
            metadata={'inserted': result.inserted, 'deleted': result.deleted},
        )
    return result


def _config_dict(row) -> dict:
    return {name: getattr(row, name) for name in TAB_CONFIG_FIELDS}


def _pending_dict(update_row: TabStagedUpdate | None) -> dict | None:
    if update_row is None:
        return None
    return {
        **_config_dict(update_row),
        'verification_list': update_row.verification_list,
        'location_ids': update_row.location_ids,
        'submitted_at': update_row.submitted_at,
    }


def _tab_dict(tab: Tab) -> dict:
    return {
        'id': tab.id,
        'shop_id': tab.shop_id,
        'owner_id': tab.owner_id,
        'status': tab.status,
        'created_at': tab.created_at,
        **_config_dict(tab),
    }


def _verification_lists(db: Session, *, shop_id: int, tab_ids: list[int]) -> dict[int, list[str]]:
    emails: dict[int, list[str]] = {tab_id: [] for tab_id in tab_ids}
    rows = db.execute(
        select(TabUser.tab_id, TabUser.email)
        .where(TabUser.shop_id == shop_id, TabUser.tab_id.in_(tab_ids))
        .order_by(TabUser.email.asc())
    ).all()
    for row in rows:
        emails[row.tab_id].append(row.email)
    return emails


def _locations(db: Session, *, shop_id: int, tab_ids: list[int]) -> dict[int, list[dict]]:
    locations: dict[int, list[dict]] = {tab_id: [] for tab_id in tab_ids}
    rows = db.execute(
        select(TabLocation.tab_id, Location.id, Location.name)
        .join(Location, and_(Location.shop_id == TabLocation.shop_id, Location.id == TabLocation.location_id))
        .where(TabLocation.shop_id == shop_id, TabLocation.tab_id.in_(tab_ids))
        .order_by(Location.name.asc(), Location.id.asc())
    ).all()
    for row in rows:
        locations[row.tab_id].append({'id': row.id, 'name': row.name})
    return locations


def _pending_updates(db: Session, *, shop_id: int, tab_ids: list[int]) -> dict[int, TabStagedUpdate]:
    rows = db.execute(
        select(TabStagedUpdate)
        .where(TabStagedUpdate.shop_id == shop_id, TabStagedUpdate.tab_id.in_(tab_ids))
        .execution_options(populate_existing=True)
    ).scalars()
    return {row.tab_id: row for row in rows}


def _bills_with_orders(db: Session, *, shop_id: int, tab_id: int) -> list[dict]:
    bills = db.execute(
        select(TabBill)
        .where(TabBill.shop_id == shop_id, TabBill.tab_id == tab_id)
        .order_by(TabBill.start_date.asc(), TabBill.id.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()

    variant_rows = db.execute(
        select(
            OrderVariant.bill_id,
            OrderVariant.item_id,
            ItemVariant.id,
            ItemVariant.name,
            ItemVariant.price,
            OrderVariant.quantity,
        )
        .join(
            ItemVariant,
            and_(
                ItemVariant.shop_id == OrderVariant.shop_id,
                ItemVariant.item_id == OrderVariant.item_id,
                ItemVariant.id == OrderVariant.variant_id,
            ),
        )
        .where(OrderVariant.shop_id == shop_id, OrderVariant.tab_id == tab_id)
        .order_by(ItemVariant.name.asc(), ItemVariant.id.asc())
    ).all()
    variants_by_line: dict[tuple[int, int], list[dict]] = {}
    for row in variant_rows:
        variants_by_line.setdefault((row.bill_id, row.item_id), []).append(
            {'id': row.id, 'name': row.name, 'price': row.price, 'quantity': row.quantity}
        )

    item_rows = db.execute(
        select(OrderItem.bill_id, Item.id, Item.name, Item.base_price, OrderItem.quantity)
        .join(Item, and_(Item.shop_id == OrderItem.shop_id, Item.id == OrderItem.item_id))
        .where(OrderItem.shop_id == shop_id, OrderItem.tab_id == tab_id)
        .order_by(Item.name.asc(), Item.id.asc())
    ).all()
    items_by_bill: dict[int, list[dict]] = {}
    for row in item_rows:
        items_by_bill.setdefault(row.bill_id, []).append(
            {
                'id': row.id,
                'name': row.name,
                'base_price': row.base_price,
                'quantity': row.quantity,
                'variants': variants_by_line.get((row.bill_id, row.id), []),
            }
        )

    return [
        {
            'id': bill.id,
            'start_date': bill.start_date,
            'end_date': bill.end_date,
            'is_paid': bill.is_paid,
            'items': items_by_bill.get(bill.id, []),
        }
        for bill in bills
    ]


def get_tab_overview(db: Session, ctx: RequestContext, *, shop_id: int, tab_id: int) -> dict:
    with storage_errors():
        tab = _authorize_tab(db, ctx, shop_id, tab_id, TabAction.READ)
        bills = _bills_with_orders(db, shop_id=shop_id, tab_id=tab_id)
        pending = _pending_updates(db, shop_id=shop_id, tab_ids=[tab_id])
        return {
            **_tab_dict(tab),
            'pending_update': _pending_dict(pending.get(tab_id)),
            'is_pending_balance': any(not bill['is_paid'] for bill in bills),
            'bills': bills,
            'verification_list': _verification_lists(db, shop_id=shop_id, tab_ids=[tab_id])[tab_id],
            'locations': _locations(db, shop_id=shop_id, tab_ids=[tab_id])[tab_id],
        }


def list_tabs(db: Session, ctx: RequestContext, *, shop_id: int) -> list[dict]:
    with storage_errors():
        _authorize_shop(db, ctx, shop_id, TabAction.READ)
        tabs = db.execute(
            select(Tab)
            .where(Tab.shop_id == shop_id)
            .order_by(Tab.id.asc())
            .execution_options(populate_existing=True)
        ).scalars().all()
        tab_ids = [tab.id for tab in tabs]
        if not tab_ids:
            return []

        open_balance = set(
            db.execute(
                select(TabBill.tab_id)
                .where(TabBill.shop_id == shop_id, TabBill.tab_id.in_(tab_ids), TabBill.is_paid.is_(False))
                .distinct()
            ).scalars()
        )
        pending = _pending_updates(db, shop_id=shop_id, tab_ids=tab_ids)
        emails = _verification_lists(db, shop_id=shop_id, tab_ids=tab_ids)
        locations = _locations(db, shop_id=shop_id, tab_ids=tab_ids)
        return [
            {
                **_tab_dict(tab),
                'pending_update': _pending_dict(pending.get(tab.id)),
                'is_pending_balance': tab.id in open_balance,
                'verification_list': emails[tab.id],
                'locations': locations[tab.id],
            }
            for tab in tabs
        ]
