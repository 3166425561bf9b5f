"""
Statement row helpers shared by the engines and the sweeper.
"""

from typing import Any, Dict, List, Optional

from .grant_pool import GrantPool
from .models import CreditStatement, StatementTypeEnum


def new_statement(
    user_id: str,
    statement_type: StatementTypeEnum,
    amount: int,
    balance_after: int,
    order_id: Optional[str] = None,
    pool: Optional[GrantPool] = None,
    source_issue_id: Optional[int] = None,
    description: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a statement row; pool=None marks unallocated funds"""
    flags = pool.source_flags if pool else {"is_free_credit": False, "is_subscription_credit": False}
    return {
        "user_id": user_id,
        "statement_type": statement_type.value,
        "amount": amount,
        "balance_after": balance_after,
        "order_id": order_id,
        "source_issue_id": source_issue_id,
        "description": description,
        **flags,
    }


def source_key(statement: Dict[str, Any]) -> tuple:
    """Identity of the pool entry a statement touched"""
    return (
        bool(statement.get("is_free_credit")),
        bool(statement.get("is_subscription_credit")),
        statement.get("source_issue_id"),
    )


def to_models(rows: List[Dict[str, Any]]) -> List[CreditStatement]:
    return [CreditStatement(**row) for row in rows]
