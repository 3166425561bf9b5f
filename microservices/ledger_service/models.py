"""
Ledger Service Data Models

Credit accounts, the append-only statement log, free and subscription credit
grants, subscriptions, and the request/response models of the ledger API.
All amounts are integers in minor credit units.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator


# ====================
# Enumerations
# ====================

class StatementTypeEnum(str, Enum):
    """Valid statement type values"""
    TOP_UP = "top_up"
    CONSUME = "consume"
    REFUND = "refund"
    ISSUE = "issue"
    EXPIRE = "expire"


class CreditSourceEnum(str, Enum):
    """Pool a statement debits or credits"""
    FREE = "free"
    SUBSCRIPTION = "subscription"
    UNALLOCATED = "unallocated"


class FreeCreditIssueTypeEnum(str, Enum):
    """Why a free credit grant was issued"""
    WIDGET_DIRECT_ISSUE = "widget_direct_issue"
    INVITE_REWARDS = "invite_rewards"
    PROMOTION = "promotion"


class SweepPassEnum(str, Enum):
    """Lifecycle sweeper passes"""
    ISSUANCE = "issuance"
    EXPIRATION = "expiration"


# ====================
# Core Data Models
# ====================

class CreditAccount(BaseModel):
    """
    Credit account model - authoritative balance cache for a user.
    The balance always equals the sum of the user's statement amounts.
    """
    user_id: str = Field(..., min_length=1, max_length=64, description="User ID")
    balance: int = Field(default=0, ge=0, description="Current spendable balance")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CreditStatement(BaseModel):
    """
    Credit statement model - one immutable row per balance-affecting event.
    """
    id: int = Field(..., description="Monotonic statement ID")
    user_id: str = Field(..., description="User ID")
    statement_type: StatementTypeEnum = Field(..., description="Statement type")
    amount: int = Field(..., description="Signed amount (positive credit, negative debit)")
    balance_after: int = Field(..., ge=0, description="Account balance after this event")
    order_id: Optional[str] = Field(None, description="Correlation key")
    is_free_credit: bool = Field(default=False, description="Statement touches a free grant")
    is_subscription_credit: bool = Field(default=False, description="Statement touches a subscription grant")
    source_issue_id: Optional[int] = Field(None, description="Grant consumed, refunded, issued or expired")
    description: Optional[str] = Field(None, max_length=500)
    created_at: Optional[datetime] = None

    @property
    def source(self) -> CreditSourceEnum:
        if self.is_free_credit:
            return CreditSourceEnum.FREE
        if self.is_subscription_credit:
            return CreditSourceEnum.SUBSCRIPTION
        return CreditSourceEnum.UNALLOCATED


class CreditGrant(BaseModel):
    """
    Credit grant model - a bounded, individually expirable credit allocation.
    Shared shape of free and subscription grants.
    """
    id: int
    user_id: str
    total_granted: int = Field(..., gt=0)
    current_balance: int = Field(..., ge=0)
    issue_date: datetime
    expire_date: datetime
    is_issued: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_balance_bounds(self):
        if self.current_balance > self.total_granted:
            raise ValueError("current_balance cannot exceed total_granted")
        return self


class FreeCreditGrant(CreditGrant):
    """Free (promotional / invite reward / direct issue) credit grant"""
    issue_type: FreeCreditIssueTypeEnum = FreeCreditIssueTypeEnum.WIDGET_DIRECT_ISSUE
    widget_tag: Optional[str] = None
    app_id: Optional[str] = None
    invited_user_id: Optional[str] = None
    description: Optional[str] = None
    is_issued: bool = True


class SubscriptionCreditGrant(CreditGrant):
    """Subscription-scheduled credit grant"""
    subscription_id: str
    widget_tag: Optional[str] = None


class Subscription(BaseModel):
    """Subscription model - schedules subscription credit grants"""
    subscription_id: str
    user_id: str
    widget_tag: str
    product_name: Optional[str] = None
    period_start: datetime
    period_end: datetime
    cancel_at_period_end: bool = False
    subscription_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ====================
# Request Models
# ====================

class OpenAccountRequest(BaseModel):
    """Request to open a credit account"""
    user_id: str = Field(..., min_length=1, max_length=64, description="User ID")

    @field_validator('user_id')
    @classmethod
    def validate_user_id(cls, v):
        """Validate user_id is not empty"""
        if not v or not v.strip():
            raise ValueError("user_id cannot be empty")
        return v.strip()


class TopUpRequest(BaseModel):
    """Request to credit paid (unallocated) funds"""
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0, description="Credits bought")
    order_id: str = Field(..., min_length=1, max_length=128, description="Paid order ID")
    description: Optional[str] = Field(None, max_length=500)
    invited_by: Optional[str] = Field(None, max_length=64, description="Inviter rewarded on the user's first top-up")


class IssueFreeCreditRequest(BaseModel):
    """Request to issue a free credit grant"""
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0)
    issue_type: FreeCreditIssueTypeEnum = FreeCreditIssueTypeEnum.WIDGET_DIRECT_ISSUE
    expire_days: Optional[int] = Field(None, ge=1, le=3650, description="Days until the grant expires")
    widget_tag: Optional[str] = Field(None, max_length=64)
    app_id: Optional[str] = Field(None, max_length=64)
    invited_user_id: Optional[str] = Field(None, max_length=64)
    description: Optional[str] = Field(None, max_length=500)


class ConsumeCreditsRequest(BaseModel):
    """Request to consume credits for an order"""
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0, description="Amount to consume")
    order_id: str = Field(..., min_length=1, max_length=128)
    allow_free_credit: bool = Field(default=True, description="Whether free grants may be used")


class RefundCreditsRequest(BaseModel):
    """Request to refund a prior consumption"""
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0, description="Maximum amount to refund")
    order_id: str = Field(..., min_length=1, max_length=128)


class SubscriptionCreditSchedule(BaseModel):
    """One scheduled subscription credit grant"""
    amount: int = Field(..., description="Credits granted")
    issue_date: datetime = Field(..., description="When the grant becomes spendable")
    expire_date: datetime = Field(..., description="When the grant expires")


class SubscriptionDetail(BaseModel):
    """Subscription attributes supplied by the subscription owner"""
    product_name: Optional[str] = Field(None, max_length=128)
    period_start: datetime
    period_end: datetime
    cancel_at_period_end: bool = False
    subscription_metadata: Dict[str, Any] = Field(default_factory=dict)


class UpsertSubscriptionRequest(BaseModel):
    """Request to create or update a subscription and schedule its credits"""
    user_id: str = Field(..., min_length=1, max_length=64)
    widget_tag: str = Field(..., min_length=1, max_length=64)
    subscription_detail: SubscriptionDetail
    subscription_credits: List[SubscriptionCreditSchedule] = Field(default_factory=list)


# ====================
# Response Models
# ====================

class ConsumptionResult(BaseModel):
    """Outcome of a consumption"""
    user_id: str
    order_id: str
    total_consumed: int
    free_consumed: int = 0
    subscription_consumed: int = 0
    unallocated_consumed: int = 0
    balance_after: int
    statements: List[CreditStatement] = Field(default_factory=list)


class RefundResult(BaseModel):
    """Outcome of a refund"""
    user_id: str
    order_id: str
    requested: int
    refunded: int = 0
    skipped_expired: int = 0
    balance_after: Optional[int] = None
    statements: List[CreditStatement] = Field(default_factory=list)


class BalanceSummary(BaseModel):
    """Balance broken down by source"""
    user_id: str
    total_balance: int = 0
    free_balance: int = 0
    subscription_balance: int = 0
    unallocated_balance: int = 0


class StatementListResponse(BaseModel):
    """Paginated statement history"""
    user_id: str
    statements: List[CreditStatement]
    total: int
    page: int
    page_size: int


class ReconciliationReport(BaseModel):
    """Account balance compared with the statement log"""
    user_id: str
    account_balance: int
    statement_sum: int
    statement_count: int
    consistent: bool


class SweepResult(BaseModel):
    """Outcome of a lifecycle sweeper pass"""
    pass_name: SweepPassEnum
    subscription_id: Optional[str] = None
    processed_count: int = 0
    failed_count: int = 0
    total_amount: int = 0
    processed_at: datetime
    statements: List[CreditStatement] = Field(default_factory=list)


class LifecycleCycleResult(BaseModel):
    """Expiration pass followed by issuance pass"""
    expiration: SweepResult
    issuance: SweepResult


class SubscriptionResponse(BaseModel):
    """Subscription with its scheduled grants"""
    subscription: Subscription
    created: bool
    scheduled_grants: List[SubscriptionCreditGrant] = Field(default_factory=list)
    issuance: Optional[SweepResult] = None


class CancelSubscriptionResponse(BaseModel):
    """Outcome of a subscription cancellation"""
    subscription_id: str
    user_id: str
    removed_grant_count: int
    success: bool = True


class HealthCheckResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    timestamp: str
    dependencies: Dict[str, str] = Field(default_factory=dict)
