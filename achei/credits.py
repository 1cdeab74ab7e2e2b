"""
Credit ledger: balance, consumption, purchases and refunds.
"""

import logging
from typing import Any, Dict, List, Optional

from achei import storage

logger = logging.getLogger("achei_leads")

LOW_BALANCE_THRESHOLD = 20
CRITICAL_BALANCE_THRESHOLD = 5
TRANSACTION_TYPES = {"purchase", "consumption", "bonus", "refund"}


class InsufficientCredits(RuntimeError):
    def __init__(self, message: str = "Créditos insuficientes", required: int = 1, balance: int = 0):
        super().__init__(message)
        self.required = required
        self.balance = balance


def get_balance(user_id: str) -> int:
    return storage.get_balance(user_id) or 0


def balance_flags(balance: int) -> Dict[str, bool]:
    return {
        "hasCredits": balance > 0,
        "isLow": CRITICAL_BALANCE_THRESHOLD < balance <= LOW_BALANCE_THRESHOLD,
        "isCritical": balance <= CRITICAL_BALANCE_THRESHOLD,
    }


def summary(user_id: str) -> Dict[str, Any]:
    balance = get_balance(user_id)
    return {"balance": balance, **balance_flags(balance)}


def require(user_id: str, amount: int = 1) -> int:
    balance = get_balance(user_id)
    if balance < amount:
        raise InsufficientCredits(required=amount, balance=balance)
    return balance


def consume(
    user_id: str,
    amount: int = 1,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> bool:
    """Debit ``amount`` credits; returns False when the balance is not enough."""
    if amount <= 0:
        raise ValueError("amount deve ser positivo")
    if not storage.try_debit(user_id, amount):
        logger.info(
            "Saldo insuficiente",
            extra={"event_type": "credits", "required": amount, "balance": get_balance(user_id)},
        )
        return False
    storage.insert_transaction(user_id, -amount, "consumption", description, reference_id)
    return True


def add_credits(
    user_id: str,
    amount: int,
    tx_type: str = "purchase",
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> int:
    if tx_type not in TRANSACTION_TYPES or tx_type == "consumption":
        raise ValueError(f"Tipo de transacao invalido: {tx_type}")
    balance = storage.add_to_balance(user_id, amount)
    storage.insert_transaction(user_id, amount, tx_type, description, reference_id)
    logger.info(
        "Creditos adicionados",
        extra={"event_type": "credits", "amount": amount, "type": tx_type, "balance": balance},
    )
    return balance


def refund(user_id: str, amount: int, description: Optional[str] = None, reference_id: Optional[str] = None) -> int:
    return add_credits(user_id, amount, "refund", description, reference_id)


def has_reference(reference_id: str, tx_type: Optional[str] = None) -> bool:
    return storage.find_transaction(reference_id, tx_type) is not None


def list_transactions(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    return [
        {
            "id": row["id"],
            "amount": row["amount"],
            "type": row["type"],
            "description": row["description"],
            "referenceId": row["reference_id"],
            "createdAt": row["created_at"],
        }
        for row in storage.list_transactions(user_id, limit)
    ]


def list_packages() -> List[Dict[str, Any]]:
    return [
        {
            "id": row["id"],
            "name": row["name"],
            "priceBrl": row["price_brl"],
            "credits": row["credits"],
            "bonusCredits": row["bonus_credits"],
            "totalCredits": row["credits"] + row["bonus_credits"],
            "position": row["position"],
        }
        for row in storage.list_packages(active_only=True)
    ]
