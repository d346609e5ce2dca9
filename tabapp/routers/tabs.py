from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from tabapp.auth import RequestContext, get_request_context
from tabapp.db import get_db
from tabapp.schemas import BillOrder, TabCreate, TabUpdate, VerificationList
from tabapp.services import tab_service

router = APIRouter(prefix='/shops/{shop_id}/tabs', tags=['tabs'])


@router.post('', status_code=status.HTTP_201_CREATED)
def create_tab(
    shop_id: int,
    data: TabCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    tab_id = tab_service.create_tab(db, ctx, shop_id=shop_id, data=data)
    return {'id': tab_id}


@router.get('')
def list_tabs(
    shop_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return tab_service.list_tabs(db, ctx, shop_id=shop_id)


@router.get('/{tab_id}')
def get_tab(
    shop_id: int,
    tab_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return tab_service.get_tab_overview(db, ctx, shop_id=shop_id, tab_id=tab_id)


@router.patch('/{tab_id}', status_code=status.HTTP_204_NO_CONTENT)
def submit_tab_update(
    shop_id: int,
    tab_id: int,
    data: TabUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    tab_service.submit_update(db, ctx, shop_id=shop_id, tab_id=tab_id, data=data)


@router.post('/{tab_id}/approve', status_code=status.HTTP_204_NO_CONTENT)
def approve_tab(
    shop_id: int,
    tab_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    tab_service.approve_tab(db, ctx, shop_id=shop_id, tab_id=tab_id)


@router.post('/{tab_id}/close', status_code=status.HTTP_204_NO_CONTENT)
def close_tab(
    shop_id: int,
    tab_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    tab_service.close_tab(db, ctx, shop_id=shop_id, tab_id=tab_id)


@router.put('/{tab_id}/verification-list', status_code=status.HTTP_204_NO_CONTENT)
def set_verification_list(
    shop_id: int,
    tab_id: int,
    data: VerificationList,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    tab_service.set_verification_list(db, ctx, shop_id=shop_id, tab_id=tab_id, data=data)


@router.post('/{tab_id}/add-order')
def add_order(
    shop_id: int,
    tab_id: int,
    data: BillOrder,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    result = tab_service.add_order(db, ctx, shop_id=shop_id, tab_id=tab_id, data=data)
    return {'bill_id': result.bill_id}


@router.post('/{tab_id}/remove-order')
def remove_order(
    shop_id: int,
    tab_id: int,
    data: BillOrder,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    result = tab_service.remove_order(db, ctx, shop_id=shop_id, tab_id=tab_id, data=data)
    return {'bill_id': result.bill_id}


@router.post('/{tab_id}/bills/{bill_id}/close', status_code=status.HTTP_204_NO_CONTENT)
def close_bill(
    shop_id: int,
    tab_id: int,
    bill_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> None:
    tab_service.mark_bill_paid(db, ctx, shop_id=shop_id, tab_id=tab_id, bill_id=bill_id)
