"""
TRANSACTION API ROUTES

Thin HTTP layer over the LedgerEngine. Every total-changing call goes
through the engine; the routes only parse input and shape responses.
"""

from fastapi import APIRouter, Depends, Query, status
from datetime import datetime
from typing import Optional
import logging

from models import TransactionCreate, TransactionUpdate, TransactionType
from permissions import get_authenticated_user
from dependencies import get_ledger_engine
from serialization import serialize_doc, serialize_docs
from ledger import LedgerEngine

logger = logging.getLogger(__name__)

transaction_router = APIRouter(prefix="/api/transactions", tags=["Transactions"])


@transaction_router.post("", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    transaction_data: TransactionCreate,
    user: dict = Depends(get_authenticated_user),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Record an income/expense transaction and update project totals"""
    transaction = await engine.create_transaction(
        project_id=transaction_data.project_id,
        party_id=transaction_data.party_id,
        transaction_type=transaction_data.type,
        amount=transaction_data.amount,
        acting_user_id=user["user_id"],
        date=transaction_data.date,
        note=transaction_data.note,
        reference=transaction_data.reference,
        currency=transaction_data.currency,
        file_url=transaction_data.file_url,
        file_name=transaction_data.file_name
    )
    populated = await engine.get_transaction(str(transaction["_id"]), user["user_id"])

    return {
        "success": True,
        "message": "Transaction created successfully",
        "data": serialize_doc(populated)
    }


@transaction_router.get("")
async def list_transactions(
    project_id: Optional[str] = None,
    party_id: Optional[str] = None,
    type: Optional[TransactionType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_authenticated_user),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """List transactions across the user's projects with a derived summary"""
    result = await engine.list_transactions(
        user["user_id"],
        project_id=project_id,
        party_id=party_id,
        transaction_type=type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit
    )

    return {
        "success": True,
        "data": serialize_docs(result["transactions"]),
        "pagination": result["pagination"],
        "summary": result["summary"]
    }


@transaction_router.get("/project/{project_id}")
async def list_project_transactions(
    project_id: str,
    type: Optional[TransactionType] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_authenticated_user),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Transactions of one project plus its persisted totals"""
    result = await engine.list_project_transactions(
        project_id,
        user["user_id"],
        transaction_type=type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit
    )

    return {
        "success": True,
        "data": serialize_docs(result["transactions"]),
        "project": result["project"],
        "pagination": result["pagination"],
        "summary": result["summary"]
    }


@transaction_router.get("/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    user: dict = Depends(get_authenticated_user),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    transaction = await engine.get_transaction(transaction_id, user["user_id"])
    return {"success": True, "data": serialize_doc(transaction)}


@transaction_router.put("/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    updates: TransactionUpdate,
    user: dict = Depends(get_authenticated_user),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """
    Update a transaction.

    Only fields present in the body are applied. Changing type or amount
    reverses the old entry on the project totals and applies the new one.
    """
    await engine.update_transaction(
        transaction_id,
        updates.dict(exclude_unset=True),
        user["user_id"]
    )
    populated = await engine.get_transaction(transaction_id, user["user_id"])

    return {
        "success": True,
        "message": "Transaction updated successfully",
        "data": serialize_doc(populated)
    }


@transaction_router.delete("/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    user: dict = Depends(get_authenticated_user),
    engine: LedgerEngine = Depends(get_ledger_engine)
):
    """Soft delete: totals are reversed, the record is kept for history"""
    await engine.soft_delete_transaction(transaction_id, user["user_id"])
    return {"success": True, "message": "Transaction deleted successfully"}
