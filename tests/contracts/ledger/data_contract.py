"""
Ledger Service - Data Contract

Test data factory and request builders for ledger_service.
Zero hardcoded data - all test data generated through factory methods.

Request and response shapes are the service's own pydantic models; this
module only generates values for them.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional
import secrets
import uuid

from microservices.ledger_service.models import (
    FreeCreditIssueTypeEnum,
    SubscriptionCreditSchedule,
    SubscriptionDetail,
    UpsertSubscriptionRequest,
)


# ============================================================================
# Test Data Factory
# ============================================================================


class LedgerTestDataFactory:
    """
    Test data factory for ledger_service - zero hardcoded data.

    Factory methods are prefixed with make_ for valid data and
    make_invalid_ for invalid data scenarios.
    """

    # ========================================================================
    # Identifiers
    # ========================================================================

    @staticmethod
    def make_user_id() -> str:
        """Generate valid user ID"""
        return f"user_{uuid.uuid4().hex[:16]}"

    @staticmethod
    def make_order_id() -> str:
        """Generate valid order ID"""
        return f"order_{uuid.uuid4().hex[:20]}"

    @staticmethod
    def make_widget_tag() -> str:
        """Generate valid widget tag"""
        return f"widget_{uuid.uuid4().hex[:8]}"

    @staticmethod
    def make_app_id() -> str:
        """Generate valid app ID"""
        return f"app_{uuid.uuid4().hex[:12]}"

    # ========================================================================
    # Timestamps
    # ========================================================================

    @staticmethod
    def make_timestamp() -> datetime:
        """Generate current timestamp"""
        return datetime.now(timezone.utc)

    @staticmethod
    def make_past_timestamp(days_ago: int = 30) -> datetime:
        """Generate timestamp in the past"""
        return datetime.now(timezone.utc) - timedelta(days=days_ago)

    @staticmethod
    def make_future_timestamp(days_ahead: int = 90) -> datetime:
        """Generate timestamp in the future"""
        return datetime.now(timezone.utc) + timedelta(days=days_ahead)

    # ========================================================================
    # Amounts
    # ========================================================================

    @staticmethod
    def make_amount() -> int:
        """Generate valid credit amount"""
        return secrets.randbelow(9000) + 1000  # 1000-9999

    @staticmethod
    def make_issue_type() -> str:
        """Generate valid free credit issue type"""
        return secrets.choice([e.value for e in FreeCreditIssueTypeEnum])

    # ========================================================================
    # Subscription Data
    # ========================================================================

    @staticmethod
    def make_subscription_detail(
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        **overrides,
    ) -> SubscriptionDetail:
        """Generate a subscription detail covering the current month"""
        start = period_start or datetime.now(timezone.utc) - timedelta(days=1)
        end = period_end or start + timedelta(days=30)
        data: Dict[str, Any] = {
            "product_name": f"plan_{secrets.token_hex(4)}",
            "period_start": start,
            "period_end": end,
            "cancel_at_period_end": False,
            "subscription_metadata": {"plan_code": secrets.token_hex(3)},
        }
        data.update(overrides)
        return SubscriptionDetail(**data)

    @staticmethod
    def make_due_credit(amount: int, lifetime_days: int = 30) -> SubscriptionCreditSchedule:
        """Schedule entry whose issue_date has already passed"""
        issue = datetime.now(timezone.utc) - timedelta(hours=1)
        return SubscriptionCreditSchedule(
            amount=amount,
            issue_date=issue,
            expire_date=issue + timedelta(days=lifetime_days),
        )

    @staticmethod
    def make_future_credit(amount: int, issue_in_days: int = 30, lifetime_days: int = 30) -> SubscriptionCreditSchedule:
        """Schedule entry that is not yet due"""
        issue = datetime.now(timezone.utc) + timedelta(days=issue_in_days)
        return SubscriptionCreditSchedule(
            amount=amount,
            issue_date=issue,
            expire_date=issue + timedelta(days=lifetime_days),
        )

    @staticmethod
    def make_monthly_schedule(amount: int, months: int = 3) -> List[SubscriptionCreditSchedule]:
        """One grant per month starting now, each valid for its month"""
        start = datetime.now(timezone.utc) - timedelta(hours=1)
        return [
            SubscriptionCreditSchedule(
                amount=amount,
                issue_date=start + timedelta(days=30 * i),
                expire_date=start + timedelta(days=30 * (i + 1)),
            )
            for i in range(months)
        ]

    # ========================================================================
    # Invalid Data Generators
    # ========================================================================

    @staticmethod
    def make_invalid_amount() -> int:
        """Generate non-positive amount"""
        return -secrets.randbelow(1000)

    @staticmethod
    def make_invalid_credit_window() -> SubscriptionCreditSchedule:
        """Schedule entry issued after it expires"""
        issue = datetime.now(timezone.utc) + timedelta(days=10)
        return SubscriptionCreditSchedule(
            amount=100,
            issue_date=issue,
            expire_date=issue - timedelta(days=1),
        )


# ============================================================================
# Request Builders
# ============================================================================


class SubscriptionRequestBuilder:
    """Builder for upsert subscription requests with fluent API"""

    def __init__(self):
        self._user_id = LedgerTestDataFactory.make_user_id()
        self._widget_tag = LedgerTestDataFactory.make_widget_tag()
        self._detail = LedgerTestDataFactory.make_subscription_detail()
        self._credits: List[SubscriptionCreditSchedule] = []

    def with_user_id(self, value: str) -> 'SubscriptionRequestBuilder':
        self._user_id = value
        return self

    def with_widget_tag(self, value: str) -> 'SubscriptionRequestBuilder':
        self._widget_tag = value
        return self

    def with_detail(self, value: SubscriptionDetail) -> 'SubscriptionRequestBuilder':
        self._detail = value
        return self

    def with_due_credit(self, amount: int, lifetime_days: int = 30) -> 'SubscriptionRequestBuilder':
        self._credits.append(LedgerTestDataFactory.make_due_credit(amount, lifetime_days))
        return self

    def with_future_credit(self, amount: int, issue_in_days: int = 30) -> 'SubscriptionRequestBuilder':
        self._credits.append(LedgerTestDataFactory.make_future_credit(amount, issue_in_days))
        return self

    def build(self) -> UpsertSubscriptionRequest:
        """Build the request model"""
        return UpsertSubscriptionRequest(
            user_id=self._user_id,
            widget_tag=self._widget_tag,
            subscription_detail=self._detail,
            subscription_credits=list(self._credits),
        )

    def build_dict(self) -> Dict[str, Any]:
        """Build a JSON-ready request body"""
        return self.build().model_dump(mode="json")
