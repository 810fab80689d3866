from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from gatehouse.logging import get_logger
from gatehouse.service.errors import ValidationError
from gatehouse.storage.schema import SUBSCRIPTION_TIERS


def _amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number", detail={"amount": value})
    if amount <= 0:
        raise ValidationError("amount must be positive", detail={"amount": value})
    return amount


class SubscriptionService:
    """Subscription tiers and prepaid balance for local accounts."""

    def __init__(self, repository) -> None:
        self.repository = repository
        self.logger = get_logger(__name__)

    def get_current_tier(self, user_id: str | int) -> str:
        return self.repository.get_subscription_tier(int(user_id))

    def upgrade_tier(self, user_id: str | int, new_tier: str) -> None:
        if new_tier not in SUBSCRIPTION_TIERS:
            raise ValidationError(
                "invalid subscription tier",
                detail={"tier": new_tier, "allowed": list(SUBSCRIPTION_TIERS)},
            )
        self.repository.change_subscription_tier(int(user_id), new_tier)
        self.logger.info("subscription_tier_changed", user_id=str(user_id), tier=new_tier)

    def get_balance(self, user_id: str | int) -> Decimal:
        return self.repository.get_balance(int(user_id))

    def add_balance(self, user_id: str | int, amount: Any, description: str = "Deposit") -> Decimal:
        balance = self.repository.add_balance(int(user_id), _amount(amount), description)
        self.logger.info("balance_added", user_id=str(user_id))
        return balance

    def deduct_balance(
        self, user_id: str | int, amount: Any, description: str = "Withdrawal"
    ) -> Decimal:
        balance = self.repository.deduct_balance(int(user_id), _amount(amount), description)
        self.logger.info("balance_deducted", user_id=str(user_id))
        return balance

    def get_transaction_history(self, user_id: str | int, limit: int = 10) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.repository.list_transactions(int(user_id), limit)]
