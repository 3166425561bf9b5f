"""
Ledger Service Component Tests

Tests LedgerService with an in-memory repository and mock event bus.

Coverage:
1. Accounts and balances
2. Top-ups
3. Free credit issuance
4. Consumption ordering and sufficiency
5. Refunds
6. Statement history and reconciliation
7. Atomicity of failed mutations

Usage:
    pytest tests/component/ledger/test_ledger_service_component.py -v
"""

import asyncio
from datetime import timedelta

import pytest

from microservices.ledger_service.grant_pool import utc_now
from microservices.ledger_service.models import StatementTypeEnum
from microservices.ledger_service.protocols import (
    AccountNotFoundError,
    InsufficientBalanceError,
    LedgerValidationError,
)


async def give_free_and_subscription(ledger_service, data_factory, user_id, free=100, subscription=500):
    """Free grant plus an already-issued subscription grant"""
    await ledger_service.issue_free_credit(user_id, free)
    await ledger_service.upsert_subscription(
        user_id,
        data_factory.make_widget_tag(),
        data_factory.make_subscription_detail(),
        [data_factory.make_due_credit(subscription)],
    )


# =============================================================================
# 1. Accounts and balances
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestAccounts:
    """Account opening and balance queries"""

    async def test_open_account_starts_at_zero(self, ledger_service, data_factory):
        user_id = data_factory.make_user_id()

        account = await ledger_service.open_account(user_id)

        assert account.user_id == user_id
        assert account.balance == 0
        assert await ledger_service.get_balance(user_id) == 0

    async def test_open_account_is_idempotent(self, ledger_service, mock_repository, account_user):
        await ledger_service.top_up(account_user, 50, "order_1")

        account = await ledger_service.open_account(account_user)

        assert account.balance == 50
        assert len(mock_repository.accounts) == 1

    async def test_open_account_rejects_blank_user_id(self, ledger_service):
        with pytest.raises(LedgerValidationError, match="user_id"):
            await ledger_service.open_account("   ")

    async def test_unknown_user_balance_is_zero(self, ledger_service, data_factory):
        assert await ledger_service.get_balance(data_factory.make_user_id()) == 0

    async def test_balance_summary_splits_by_source(self, ledger_service, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        await ledger_service.top_up(account_user, 50, data_factory.make_order_id())

        summary = await ledger_service.get_balance_summary(account_user)

        assert summary.total_balance == 650
        assert summary.free_balance == 100
        assert summary.subscription_balance == 500
        assert summary.unallocated_balance == 50


# =============================================================================
# 2. Top-ups
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestTopUp:
    """Paid credit top-ups"""

    async def test_top_up_credits_unallocated_balance(self, ledger_service, data_factory, account_user):
        order_id = data_factory.make_order_id()

        statement = await ledger_service.top_up(account_user, 1000, order_id)

        assert statement.statement_type == StatementTypeEnum.TOP_UP
        assert statement.amount == 1000
        assert statement.balance_after == 1000
        assert statement.order_id == order_id
        assert not statement.is_free_credit
        assert not statement.is_subscription_credit
        assert statement.source_issue_id is None

    async def test_top_up_same_order_credits_once(
        self, ledger_service, mock_repository, mock_event_bus, data_factory, account_user
    ):
        order_id = data_factory.make_order_id()

        first = await ledger_service.top_up(account_user, 1000, order_id)
        second = await ledger_service.top_up(account_user, 1000, order_id)

        assert second.id == first.id
        assert await ledger_service.get_balance(account_user) == 1000
        assert len(mock_repository.statements_for(account_user, "top_up")) == 1
        assert len(mock_event_bus.get_events_by_subject("ledger.credits.topped_up")) == 1

    async def test_top_up_requires_account(self, ledger_service, data_factory):
        with pytest.raises(AccountNotFoundError):
            await ledger_service.top_up(data_factory.make_user_id(), 100, data_factory.make_order_id())

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_top_up_rejects_non_positive_amount(self, ledger_service, data_factory, account_user, amount):
        with pytest.raises(LedgerValidationError):
            await ledger_service.top_up(account_user, amount, data_factory.make_order_id())

    async def test_top_up_publishes_event(
        self, ledger_service, mock_event_bus, data_factory, account_user, assertions
    ):
        order_id = data_factory.make_order_id()

        await ledger_service.top_up(account_user, 300, order_id)

        event = assertions.assert_event_published(
            mock_event_bus.published_events, "ledger.credits.topped_up", order_id=order_id
        )
        assert event["data"]["balance_after"] == 300
        assert event["source"] == "ledger_service"


@pytest.mark.component
@pytest.mark.asyncio
class TestInviteRewards:
    """Inviter reward on a user's first top-up"""

    @pytest.fixture
    async def inviter(self, ledger_service, data_factory):
        user_id = data_factory.make_user_id()
        await ledger_service.open_account(user_id)
        return user_id

    async def test_first_top_up_rewards_inviter(
        self, ledger_service, mock_repository, data_factory, account_user, inviter
    ):
        await ledger_service.top_up(account_user, 1000, data_factory.make_order_id(), invited_by=inviter)

        assert await ledger_service.get_balance(account_user) == 1000
        assert await ledger_service.get_balance(inviter) == 500
        [grant] = mock_repository.grants["free"].values()
        assert grant["user_id"] == inviter
        assert grant["issue_type"] == "invite_rewards"
        assert grant["invited_user_id"] == account_user

    async def test_repeat_top_up_does_not_reward_again(self, ledger_service, data_factory, account_user, inviter):
        await ledger_service.top_up(account_user, 1000, data_factory.make_order_id(), invited_by=inviter)
        await ledger_service.top_up(account_user, 1000, data_factory.make_order_id(), invited_by=inviter)

        assert await ledger_service.get_balance(inviter) == 500

    async def test_redelivered_first_order_rewards_once(self, ledger_service, data_factory, account_user, inviter):
        order_id = data_factory.make_order_id()

        await ledger_service.top_up(account_user, 1000, order_id, invited_by=inviter)
        await ledger_service.top_up(account_user, 1000, order_id, invited_by=inviter)

        assert await ledger_service.get_balance(inviter) == 500

    async def test_inviter_without_account_is_skipped(self, ledger_service, mock_repository, data_factory, account_user):
        statement = await ledger_service.top_up(
            account_user, 1000, data_factory.make_order_id(), invited_by=data_factory.make_user_id()
        )

        assert statement.amount == 1000
        assert mock_repository.grants["free"] == {}

    async def test_reward_disabled_when_amount_is_zero(self, ledger_service, data_factory, account_user, inviter):
        ledger_service.invite_reward_amount = 0

        await ledger_service.top_up(account_user, 1000, data_factory.make_order_id(), invited_by=inviter)

        assert await ledger_service.get_balance(inviter) == 0


# =============================================================================
# 3. Free credit issuance
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestFreeCredit:
    """Free credit grants"""

    async def test_issue_free_credit_creates_spendable_grant(
        self, ledger_service, mock_repository, account_user
    ):
        grant = await ledger_service.issue_free_credit(account_user, 100, issue_type="invite_rewards")

        assert grant.is_issued
        assert grant.current_balance == grant.total_granted == 100
        assert grant.issue_type.value == "invite_rewards"
        assert await ledger_service.get_balance(account_user) == 100

        [statement] = mock_repository.statements_for(account_user, "issue")
        assert statement["is_free_credit"]
        assert statement["source_issue_id"] == grant.id

    async def test_free_credit_default_lifetime(self, ledger_service, account_user):
        now = utc_now()

        grant = await ledger_service.issue_free_credit(account_user, 100, now=now)

        assert grant.expire_date == now + timedelta(days=ledger_service.free_credit_expire_days)

    async def test_free_credit_custom_lifetime(self, ledger_service, account_user):
        now = utc_now()

        grant = await ledger_service.issue_free_credit(account_user, 100, expire_days=7, now=now)

        assert grant.expire_date == now + timedelta(days=7)

    async def test_free_credit_requires_account(self, ledger_service, data_factory):
        with pytest.raises(AccountNotFoundError):
            await ledger_service.issue_free_credit(data_factory.make_user_id(), 100)

    async def test_free_credit_publishes_issued_event(self, ledger_service, mock_event_bus, account_user):
        await ledger_service.issue_free_credit(account_user, 100)

        [event] = mock_event_bus.get_events_by_subject("ledger.credits.issued")
        assert event["data"]["source"] == "free"
        assert event["data"]["amount"] == 100
        assert event["data"]["expire_date"] is not None


# =============================================================================
# 4. Consumption
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestConsumption:
    """Multi-source consumption"""

    async def test_free_before_subscription(self, ledger_service, mock_repository, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)

        result = await ledger_service.consume(account_user, 300, data_factory.make_order_id())

        assert result.free_consumed == 100
        assert result.subscription_consumed == 200
        assert result.unallocated_consumed == 0
        assert result.balance_after == 300
        assert [s.amount for s in result.statements] == [-100, -200]
        assert result.statements[0].is_free_credit
        assert result.statements[1].is_subscription_credit
        assert [s.balance_after for s in result.statements] == [500, 300]

        [sub_grant] = mock_repository.grants["subscription"].values()
        assert sub_grant["current_balance"] == 300

    async def test_soonest_expiring_grant_first(self, ledger_service, mock_repository, data_factory, account_user):
        later = await ledger_service.issue_free_credit(account_user, 50, expire_days=10)
        sooner = await ledger_service.issue_free_credit(account_user, 50, expire_days=5)

        result = await ledger_service.consume(account_user, 60, data_factory.make_order_id())

        assert [s.source_issue_id for s in result.statements] == [sooner.id, later.id]
        assert [s.amount for s in result.statements] == [-50, -10]
        assert mock_repository.grant("free", sooner.id)["current_balance"] == 0
        assert mock_repository.grant("free", later.id)["current_balance"] == 40

    async def test_unallocated_after_grants(self, ledger_service, data_factory, account_user):
        await ledger_service.issue_free_credit(account_user, 100)
        await ledger_service.top_up(account_user, 200, data_factory.make_order_id())

        result = await ledger_service.consume(account_user, 250, data_factory.make_order_id())

        assert result.free_consumed == 100
        assert result.unallocated_consumed == 150
        unallocated = result.statements[-1]
        assert unallocated.amount == -150
        assert not unallocated.is_free_credit and not unallocated.is_subscription_credit
        assert unallocated.source_issue_id is None

    async def test_insufficient_balance_changes_nothing(
        self, ledger_service, mock_repository, data_factory, account_user
    ):
        grant = await ledger_service.issue_free_credit(account_user, 100)
        statements_before = len(mock_repository.statements)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger_service.consume(account_user, 150, data_factory.make_order_id())

        assert exc_info.value.available == 100
        assert exc_info.value.required == 150
        assert await ledger_service.get_balance(account_user) == 100
        assert len(mock_repository.statements) == statements_before
        assert mock_repository.grant("free", grant.id)["current_balance"] == 100

    async def test_consume_without_account_is_insufficient(self, ledger_service, data_factory):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger_service.consume(data_factory.make_user_id(), 10, data_factory.make_order_id())

        assert exc_info.value.available == 0

    async def test_free_credit_excluded(self, ledger_service, mock_repository, data_factory, account_user):
        grant = await ledger_service.issue_free_credit(account_user, 100)
        await ledger_service.top_up(account_user, 50, data_factory.make_order_id())

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await ledger_service.consume(account_user, 80, data_factory.make_order_id(), allow_free_credit=False)
        assert exc_info.value.available == 50

        result = await ledger_service.consume(
            account_user, 50, data_factory.make_order_id(), allow_free_credit=False
        )

        assert result.free_consumed == 0
        assert result.unallocated_consumed == 50
        assert result.balance_after == 100
        assert mock_repository.grant("free", grant.id)["current_balance"] == 100

    @pytest.mark.parametrize("amount", [0, -1])
    async def test_consume_rejects_non_positive_amount(self, ledger_service, data_factory, account_user, amount):
        with pytest.raises(LedgerValidationError):
            await ledger_service.consume(account_user, amount, data_factory.make_order_id())

    async def test_concurrent_consumes_never_overdraw(self, ledger_service, mock_repository, data_factory, account_user):
        await ledger_service.top_up(account_user, 100, data_factory.make_order_id())

        results = await asyncio.gather(
            ledger_service.consume(account_user, 60, data_factory.make_order_id()),
            ledger_service.consume(account_user, 60, data_factory.make_order_id()),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert len(failures) == 1
        assert await ledger_service.get_balance(account_user) == 40
        assert mock_repository.statement_sum(account_user) == 40

    async def test_consume_publishes_event(self, ledger_service, mock_event_bus, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        order_id = data_factory.make_order_id()

        await ledger_service.consume(account_user, 300, order_id)

        [event] = mock_event_bus.get_events_by_subject("ledger.credits.consumed")
        assert event["data"]["order_id"] == order_id
        assert event["data"]["free_consumed"] == 100
        assert event["data"]["subscription_consumed"] == 200
        assert len(event["data"]["statement_ids"]) == 2


# =============================================================================
# 5. Refunds
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestRefund:
    """Source-aware refunds"""

    async def test_refund_restores_sources(self, ledger_service, mock_repository, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 300, order_id)

        result = await ledger_service.refund(account_user, 300, order_id)

        assert result.refunded == 300
        assert result.balance_after == 600
        assert [s.amount for s in result.statements] == [100, 200]
        assert result.statements[0].is_free_credit
        assert result.statements[1].is_subscription_credit
        [free_grant] = mock_repository.grants["free"].values()
        [sub_grant] = mock_repository.grants["subscription"].values()
        assert free_grant["current_balance"] == 100
        assert sub_grant["current_balance"] == 500

    async def test_partial_refund_walks_oldest_first(self, ledger_service, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 300, order_id)

        result = await ledger_service.refund(account_user, 150, order_id)

        assert result.refunded == 150
        assert [s.amount for s in result.statements] == [100, 50]

    async def test_repeated_refund_credits_once(
        self, ledger_service, mock_repository, mock_event_bus, data_factory, account_user
    ):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 300, order_id)

        first = await ledger_service.refund(account_user, 300, order_id)
        second = await ledger_service.refund(account_user, 300, order_id)

        assert first.refunded == 300
        assert second.refunded == 0
        assert second.statements == []
        assert await ledger_service.get_balance(account_user) == 600
        assert len(mock_repository.statements_for(account_user, "refund")) == 2
        assert len(mock_event_bus.get_events_by_subject("ledger.credits.refunded")) == 1

    async def test_split_refunds_capped_at_consumption(self, ledger_service, data_factory, account_user):
        await ledger_service.top_up(account_user, 500, data_factory.make_order_id())
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 200, order_id)

        first = await ledger_service.refund(account_user, 150, order_id)
        second = await ledger_service.refund(account_user, 150, order_id)

        assert first.refunded == 150
        assert second.refunded == 50
        assert await ledger_service.get_balance(account_user) == 500

    async def test_refund_more_than_consumed(self, ledger_service, data_factory, account_user):
        await ledger_service.top_up(account_user, 500, data_factory.make_order_id())
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 300, order_id)

        result = await ledger_service.refund(account_user, 1000, order_id)

        assert result.requested == 1000
        assert result.refunded == 300
        assert result.balance_after == 500

    async def test_refund_skips_expired_grant(self, ledger_service, mock_repository, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 300, order_id)

        # Subscription grant lives 30 days, free grant 180
        later = utc_now() + timedelta(days=31)
        result = await ledger_service.refund_engine.refund(account_user, 300, order_id, now=later)

        assert result.refunded == 100
        assert result.skipped_expired == 200
        assert result.balance_after == 400
        [sub_grant] = mock_repository.grants["subscription"].values()
        assert sub_grant["current_balance"] == 300

    async def test_refund_unknown_order(self, ledger_service, mock_repository, data_factory, account_user):
        await ledger_service.top_up(account_user, 100, data_factory.make_order_id())

        result = await ledger_service.refund(account_user, 50, data_factory.make_order_id())

        assert result.refunded == 0
        assert result.balance_after == 100
        assert mock_repository.statements_for(account_user, "refund") == []

    async def test_refund_without_account(self, ledger_service, data_factory):
        result = await ledger_service.refund(data_factory.make_user_id(), 50, data_factory.make_order_id())

        assert result.refunded == 0
        assert result.balance_after is None

    async def test_refund_rejects_non_positive_amount(self, ledger_service, data_factory, account_user):
        with pytest.raises(LedgerValidationError):
            await ledger_service.refund(account_user, 0, data_factory.make_order_id())


# =============================================================================
# 6. Statement history and reconciliation
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestStatementsAndReconciliation:
    """Statement listing and ledger consistency"""

    async def test_statements_newest_first(self, ledger_service, data_factory, account_user):
        for _ in range(3):
            await ledger_service.top_up(account_user, 10, data_factory.make_order_id())

        page = await ledger_service.get_statements(account_user, page=1, page_size=2)

        assert page.total == 3
        assert len(page.statements) == 2
        assert page.statements[0].id > page.statements[1].id

    async def test_statements_filter_by_type_and_order(self, ledger_service, data_factory, account_user):
        order_id = data_factory.make_order_id()
        await ledger_service.top_up(account_user, 100, data_factory.make_order_id())
        await ledger_service.consume(account_user, 40, order_id)

        consumed = await ledger_service.get_statements(account_user, statement_type=StatementTypeEnum.CONSUME)
        by_order = await ledger_service.get_statements(account_user, order_id=order_id)

        assert consumed.total == 1
        assert consumed.statements[0].amount == -40
        assert by_order.total == 1

    @pytest.mark.parametrize("page,page_size", [(0, 10), (1, 0), (1, 101)])
    async def test_statements_reject_bad_paging(self, ledger_service, account_user, page, page_size):
        with pytest.raises(LedgerValidationError):
            await ledger_service.get_statements(account_user, page=page, page_size=page_size)

    async def test_balance_matches_statement_log(self, ledger_service, mock_repository, data_factory, account_user):
        await give_free_and_subscription(ledger_service, data_factory, account_user)
        await ledger_service.top_up(account_user, 70, data_factory.make_order_id())
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 420, order_id)
        await ledger_service.refund(account_user, 200, order_id)

        report = await ledger_service.reconcile(account_user)

        assert report.consistent
        assert report.account_balance == report.statement_sum == 450
        assert report.statement_count == len(mock_repository.statements_for(account_user))

    async def test_reconcile_detects_drift(self, ledger_service, mock_repository, data_factory, account_user):
        await ledger_service.top_up(account_user, 100, data_factory.make_order_id())
        mock_repository.accounts[account_user]["balance"] += 5

        report = await ledger_service.reconcile(account_user)

        assert not report.consistent
        assert report.account_balance == 105
        assert report.statement_sum == 100

    async def test_reconcile_requires_account(self, ledger_service, data_factory):
        with pytest.raises(AccountNotFoundError):
            await ledger_service.reconcile(data_factory.make_user_id())

    async def test_health_reports_database(self, ledger_service, mock_repository):
        assert await ledger_service.check_health() == {"database": True}

        mock_repository.connected = False
        assert await ledger_service.check_health() == {"database": False}


# =============================================================================
# 7. Atomicity of failed mutations
# =============================================================================

@pytest.mark.component
@pytest.mark.asyncio
class TestAtomicity:
    """A failure mid-transaction leaves no partial effect"""

    @staticmethod
    def ledger_state(mock_repository, user_id, grant_ids):
        return (
            mock_repository.accounts[user_id]["balance"],
            [mock_repository.grant("free", gid)["current_balance"] for gid in grant_ids],
            len(mock_repository.statements_for(user_id)),
        )

    async def test_failed_consume_rolls_back(self, ledger_service, mock_repository, data_factory, account_user):
        first = await ledger_service.issue_free_credit(account_user, 100, expire_days=10)
        second = await ledger_service.issue_free_credit(account_user, 100, expire_days=20)
        grant_ids = [first.id, second.id]
        before = self.ledger_state(mock_repository, account_user, grant_ids)
        rollbacks = mock_repository.rollbacks
        mock_repository.failing_grant_ids.add(second.id)

        with pytest.raises(RuntimeError):
            await ledger_service.consume(account_user, 150, data_factory.make_order_id())

        assert before == (200, [100, 100], 2)
        assert self.ledger_state(mock_repository, account_user, grant_ids) == before
        assert mock_repository.rollbacks == rollbacks + 1

    async def test_failed_refund_rolls_back(self, ledger_service, mock_repository, data_factory, account_user):
        first = await ledger_service.issue_free_credit(account_user, 100, expire_days=10)
        second = await ledger_service.issue_free_credit(account_user, 100, expire_days=20)
        grant_ids = [first.id, second.id]
        order_id = data_factory.make_order_id()
        await ledger_service.consume(account_user, 150, order_id)
        before = self.ledger_state(mock_repository, account_user, grant_ids)
        rollbacks = mock_repository.rollbacks
        # The first portion is restored before the second one fails
        mock_repository.failing_grant_ids.add(second.id)

        with pytest.raises(RuntimeError):
            await ledger_service.refund(account_user, 150, order_id)

        assert before == (50, [0, 50], 4)
        assert self.ledger_state(mock_repository, account_user, grant_ids) == before
        assert mock_repository.rollbacks == rollbacks + 1
        assert mock_repository.statements_for(account_user, "refund") == []
