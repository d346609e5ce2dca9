from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tabapp.config import settings
from tabapp.errors import InternalError, NotFoundError
from tabapp.models import Tab, TabBill

logger = logging.getLogger(__name__)


def today() -> date:
    return datetime.now(tz=ZoneInfo(settings.billing_timezone)).date()


def bill_window(start: date, interval_days: int, tab_end: date) -> tuple[date, date]:
    """Billing window opening on ``start``, clipped to the tab's end date."""
    return start, min(start + timedelta(days=interval_days - 1), tab_end)


def lock_tab(db: Session, *, shop_id: int, tab_id: int) -> Tab:
    """Load a tab holding its row lock until the transaction ends.

    Every bill selection for a tab goes through this lock. SQLite ignores
    FOR UPDATE; its transactions hold the database write lock instead.
    """
    tab = db.execute(
        select(Tab)
        .where(Tab.shop_id == shop_id, Tab.id == tab_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not tab:
        raise NotFoundError('Tab not found')
    return tab


def _latest_bill(db: Session, *, shop_id: int, tab_id: int) -> TabBill | None:
    return db.execute(
        select(TabBill)
        .where(TabBill.shop_id == shop_id, TabBill.tab_id == tab_id)
        .order_by(TabBill.is_paid.asc(), TabBill.end_date.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _next_window(tab: Tab, bill: TabBill | None, on: date) -> tuple[date, date] | None:
    if bill is None:
        return bill_window(tab.start_date, tab.billing_interval_days, tab.end_date)
    if not bill.is_paid and bill.start_date <= on <= bill.end_date:
        return None
    return bill_window(bill.end_date, tab.billing_interval_days, tab.end_date)


def select_or_create_current_bill(db: Session, tab: Tab, *, on: date | None = None) -> int:
    """Return the id of the bill that should receive an order placed ``on``.

    Prefers an unpaid bill whose window covers the day; otherwise opens the
    first bill of the tab or the successor of the latest one. A concurrent
    transaction that opened the same bill first trips the open-bill unique
    index, in which case the selection is read again.
    """
    on = on or today()
    attempts = max(1, settings.bill_selection_attempts)
    for attempt in range(1, attempts + 1):
        bill = _latest_bill(db, shop_id=tab.shop_id, tab_id=tab.id)
        window = _next_window(tab, bill, on)
        if window is None:
            return bill.id

        start_date, end_date = window
        try:
            with db.begin_nested():
                bill_id = db.execute(
                    insert(TabBill)
                    .values(shop_id=tab.shop_id, tab_id=tab.id, start_date=start_date, end_date=end_date, is_paid=False)
                    .returning(TabBill.id)
                ).scalar_one()
        except IntegrityError:
            logger.warning(
                'Open bill for tab %s/%s starting %s already exists (attempt %s of %s)',
                tab.shop_id,
                tab.id,
                start_date,
                attempt,
                attempts,
            )
            continue

        logger.info('Opened bill %s for tab %s/%s covering %s..%s', bill_id, tab.shop_id, tab.id, start_date, end_date)
        return bill_id

    raise InternalError('Could not select a bill for the order')
