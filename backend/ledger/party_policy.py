"""
Party type policy.

A party's category permanently decides which transaction type may reference it:
- CLIENT -> income
- VENDOR -> expense
"""

from ledger.errors import InvalidStateError, InvalidInputError

CLIENT = "CLIENT"
VENDOR = "VENDOR"
INCOME = "income"
EXPENSE = "expense"

PARTY_TYPES = (CLIENT, VENDOR)
TRANSACTION_TYPES = (INCOME, EXPENSE)

_ALLOWED_TYPE = {
    CLIENT: INCOME,
    VENDOR: EXPENSE,
}


def _value(item) -> str:
    # Accept both plain strings and str-based Enum members
    return getattr(item, "value", item)


def allowed_type_for(party_type) -> str:
    """Return the only transaction type a party of this category may carry"""
    try:
        return _ALLOWED_TYPE[_value(party_type)]
    except KeyError:
        raise InvalidStateError(f"Unknown party type: {_value(party_type)}")


def is_compatible(party_type, transaction_type) -> bool:
    return _ALLOWED_TYPE.get(_value(party_type)) == _value(transaction_type)


def ensure_compatible(party_type, transaction_type) -> None:
    """Raise InvalidStateError when the party category rejects the transaction type"""
    if not is_compatible(party_type, transaction_type):
        party_type = _value(party_type)
        raise InvalidStateError(
            f"{party_type} party can only have {allowed_type_for(party_type).upper()} transactions",
            details={"party_type": party_type, "transaction_type": _value(transaction_type)}
        )


def normalize_transaction_type(value) -> str:
    """Lower-case a transaction type, accepting 'INCOME'/'EXPENSE' spellings"""
    normalized = str(_value(value) or "").strip().lower()
    if normalized not in TRANSACTION_TYPES:
        raise InvalidInputError("Type must be either 'income' or 'expense'")
    return normalized
