"""FastAPI dependencies wiring the ledger core to the request's database"""

from fastapi import Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from database import get_db, get_client, use_transactions
from audit_service import AuditService
from ledger import LedgerEngine, LedgerIntegrityJob, TransactionAccessLayer


def get_audit_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> AuditService:
    return AuditService(db)


def get_access_layer(db: AsyncIOMotorDatabase = Depends(get_db)) -> TransactionAccessLayer:
    return TransactionAccessLayer(db)


def get_ledger_engine(
    db: AsyncIOMotorDatabase = Depends(get_db),
    audit_service: AuditService = Depends(get_audit_service)
) -> LedgerEngine:
    transactional = use_transactions()
    return LedgerEngine(
        db,
        client=get_client() if transactional else None,
        use_transactions=transactional,
        audit_service=audit_service
    )


def get_integrity_job(db: AsyncIOMotorDatabase = Depends(get_db)) -> LedgerIntegrityJob:
    return LedgerIntegrityJob(db)
