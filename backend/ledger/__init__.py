"""
Ledger core: transaction ledger consistency for project finances
"""
from .errors import (
    LedgerError,
    NotFoundError,
    InvalidInputError,
    InvalidStateError,
    ConflictError,
    UnauthorizedError
)

from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    to_cents,
    from_cents,
    validate_positive,
    totals_match
)

from .party_policy import (
    CLIENT,
    VENDOR,
    INCOME,
    EXPENSE,
    is_compatible,
    ensure_compatible,
    allowed_type_for,
    normalize_transaction_type
)

from .access import (
    TransactionAccessLayer,
    parse_object_id
)

from .accumulator import (
    LedgerDelta,
    ProjectAccumulator,
    stored_totals,
    with_totals,
    zero_totals
)

from .engine import LedgerEngine

from .integrity_job import LedgerIntegrityJob

__all__ = [
    # Errors
    'LedgerError',
    'NotFoundError',
    'InvalidInputError',
    'InvalidStateError',
    'ConflictError',
    'UnauthorizedError',
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'to_cents',
    'from_cents',
    'validate_positive',
    'totals_match',
    # Party Type Policy
    'CLIENT',
    'VENDOR',
    'INCOME',
    'EXPENSE',
    'is_compatible',
    'ensure_compatible',
    'allowed_type_for',
    'normalize_transaction_type',
    # Access Layer
    'TransactionAccessLayer',
    'parse_object_id',
    # Engine
    'LedgerDelta',
    'ProjectAccumulator',
    'stored_totals',
    'with_totals',
    'zero_totals',
    'LedgerEngine',
    'LedgerIntegrityJob',
]
