"""Property-based tests for the credit ledger.

Every sequence of allocations and deductions against one member must
leave the balance row, the lifetime counters and the transaction log
in agreement, and a deduction larger than the balance must write
nothing.
"""

import asyncio
import uuid
from typing import Optional

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from creditflow.modules.billing.exceptions import InsufficientCredits, InvalidCreditAmount
from creditflow.modules.billing.ledger import (
    CreditLedger,
    calculate_monthly_allocation,
    validate_amount,
)
from creditflow.modules.billing.models import Plan, TransactionType
from creditflow.modules.billing.service import PlanCatalog


# Strategies for generating test data
amount_strategy = st.integers(min_value=1, max_value=10_000)
operation_strategy = st.tuples(st.sampled_from(["allocate", "deduct"]), amount_strategy)
operations_strategy = st.lists(operation_strategy, min_size=1, max_size=12)

DB_SETTINGS = settings(
    max_examples=15,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)


class TestMonthlyAllocationCalculation:
    """Pure rollover arithmetic."""

    @given(
        monthly_credits=st.integers(min_value=0, max_value=100_000),
        cap=st.one_of(st.none(), st.integers(min_value=0, max_value=100_000)),
        balance=st.integers(min_value=0, max_value=200_000),
    )
    @settings(max_examples=100)
    def test_rollover_is_bounded_by_balance_and_cap(
        self, monthly_credits: int, cap: Optional[int], balance: int
    ) -> None:
        allocation = calculate_monthly_allocation(monthly_credits, True, cap, balance)

        effective_cap = cap if cap is not None else monthly_credits
        assert allocation.monthly_credits == monthly_credits
        assert allocation.rollover_amount == min(balance, effective_cap)
        assert allocation.total == monthly_credits + allocation.rollover_amount

    @given(
        monthly_credits=st.integers(min_value=0, max_value=100_000),
        balance=st.integers(min_value=0, max_value=200_000),
    )
    @settings(max_examples=100)
    def test_no_rollover_when_disabled(self, monthly_credits: int, balance: int) -> None:
        allocation = calculate_monthly_allocation(monthly_credits, False, 5000, balance)

        assert allocation.rollover_amount == 0
        assert allocation.total == monthly_credits

    def test_zero_cap_is_respected(self) -> None:
        """A cap of 0 disables the bonus instead of falling back to the grant."""
        allocation = calculate_monthly_allocation(10_000, True, 0, 8000)

        assert allocation.rollover_amount == 0

    def test_starter_rollover_example(self) -> None:
        allocation = calculate_monthly_allocation(10_000, True, 5000, 8000)

        assert allocation.rollover_amount == 5000
        assert allocation.total == 15_000


class TestAmountValidation:

    @given(amount=st.integers(max_value=0))
    @settings(max_examples=50)
    def test_non_positive_amounts_rejected(self, amount: int) -> None:
        with pytest.raises(InvalidCreditAmount):
            validate_amount(amount)

    @pytest.mark.parametrize("amount", [1.5, "10", True, None])
    def test_non_integers_rejected(self, amount) -> None:
        with pytest.raises(InvalidCreditAmount):
            validate_amount(amount)


class TestLedgerConsistency:
    """Balance, lifetime counters and the transaction log stay in step."""

    @given(operations=operations_strategy)
    @DB_SETTINGS
    def test_balance_reconciles_after_every_operation(self, database_factory, operations) -> None:
        async def scenario() -> None:
            member_id = uuid.uuid4()
            expected = 0
            async with database_factory() as maker:
                async with maker() as session:
                    ledger = CreditLedger(session)
                    for kind, amount in operations:
                        if kind == "allocate":
                            result = await ledger.allocate(
                                member_id, amount, TransactionType.BONUS, "bonus"
                            )
                            expected += amount
                            assert result.new_balance == expected
                        elif amount > expected:
                            with pytest.raises(InsufficientCredits) as exc_info:
                                await ledger.deduct(member_id, amount, "usage")
                            assert exc_info.value.required == amount
                            assert exc_info.value.available == expected
                        else:
                            result = await ledger.deduct(member_id, amount, "usage")
                            expected -= amount
                            assert result.new_balance == expected

                        snapshot = await ledger.get_balance(member_id)
                        assert snapshot.balance == expected
                        assert snapshot.balance >= 0
                        assert snapshot.balance == snapshot.lifetime_earned - snapshot.lifetime_spent

                    report = await ledger.reconcile(member_id)
                    assert report.is_consistent
                    assert report.transaction_sum == expected

        asyncio.run(scenario())

    @given(operations=operations_strategy)
    @DB_SETTINGS
    def test_sequence_numbers_are_gapless(self, database_factory, operations) -> None:
        async def scenario() -> None:
            member_id = uuid.uuid4()
            async with database_factory() as maker:
                async with maker() as session:
                    ledger = CreditLedger(session)
                    for kind, amount in operations:
                        if kind == "allocate":
                            await ledger.allocate(member_id, amount, TransactionType.PURCHASE, "purchase")
                        else:
                            try:
                                await ledger.deduct(member_id, amount, "usage")
                            except InsufficientCredits:
                                pass

                    transactions = await ledger.list_transactions(member_id, limit=100)
                    sequences = sorted(t.sequence for t in transactions)
                    assert sequences == list(range(1, len(transactions) + 1))

                    # balance_after on the latest entry is the current balance
                    snapshot = await ledger.get_balance(member_id)
                    if transactions:
                        assert transactions[0].balance_after == snapshot.balance

        asyncio.run(scenario())


class TestLedgerOperations:

    @pytest.mark.asyncio
    async def test_failed_deduction_writes_nothing(self, session) -> None:
        member_id = uuid.uuid4()
        ledger = CreditLedger(session)
        await ledger.allocate(member_id, 50, TransactionType.BONUS, "welcome bonus")

        with pytest.raises(InsufficientCredits):
            await ledger.deduct(member_id, 51, "too much")

        snapshot = await ledger.get_balance(member_id)
        transactions = await ledger.list_transactions(member_id)
        assert snapshot.balance == 50
        assert snapshot.lifetime_spent == 0
        assert len(transactions) == 1

    @pytest.mark.asyncio
    async def test_refused_deduction_keeps_loaded_rows_usable(self, session) -> None:
        catalog = PlanCatalog(session)
        await catalog.ensure_default_plans()
        plan = await catalog.get_plan_by_name("starter")
        ledger = CreditLedger(session)

        with pytest.raises(InsufficientCredits):
            await ledger.deduct(uuid.uuid4(), 5, "no balance")

        # Attribute access would lazy-load, and fail, on an expired row
        assert plan.name == "starter"
        assert plan.monthly_credits == 10_000

    @pytest.mark.asyncio
    async def test_deduct_without_balance_row(self, session) -> None:
        ledger = CreditLedger(session)

        with pytest.raises(InsufficientCredits) as exc_info:
            await ledger.deduct(uuid.uuid4(), 1, "usage")

        assert exc_info.value.available == 0

    @pytest.mark.asyncio
    async def test_get_balance_does_not_create_row(self, session) -> None:
        member_id = uuid.uuid4()
        ledger = CreditLedger(session)

        snapshot = await ledger.get_balance(member_id)

        assert snapshot.balance == 0
        assert await ledger.repository.get_balance(member_id) is None

    @pytest.mark.asyncio
    async def test_allocate_rejects_deduction_type(self, session) -> None:
        ledger = CreditLedger(session)

        with pytest.raises(InvalidCreditAmount):
            await ledger.allocate(uuid.uuid4(), 10, TransactionType.USAGE_DEDUCTION, "nope")

    @pytest.mark.asyncio
    async def test_monthly_allocation_adds_rollover_on_top(self, session) -> None:
        member_id = uuid.uuid4()
        plan = Plan(
            id=uuid.uuid4(),
            name="starter",
            display_name="Starter",
            monthly_credits=10_000,
            rollover_credits=True,
            max_rollover_credits=5000,
        )
        ledger = CreditLedger(session)
        await ledger.allocate(member_id, 8000, TransactionType.PURCHASE, "top up")

        result = await ledger.allocate_monthly_credits(member_id, plan)

        assert result is not None
        assert result.new_balance == 23_000
        latest = (await ledger.list_transactions(member_id, limit=1))[0]
        assert latest.amount == 15_000
        assert latest.type == TransactionType.MONTHLY_ALLOCATION.value
        assert latest.transaction_metadata["rolloverAmount"] == 5000
        snapshot = await ledger.get_balance(member_id)
        assert snapshot.last_reset_at is not None

    @pytest.mark.asyncio
    async def test_monthly_allocation_skips_empty_grant(self, session) -> None:
        plan = Plan(id=uuid.uuid4(), name="empty", display_name="Empty", monthly_credits=0, rollover_credits=False)
        ledger = CreditLedger(session)

        assert await ledger.allocate_monthly_credits(uuid.uuid4(), plan) is None

    @pytest.mark.asyncio
    async def test_members_are_independent(self, session) -> None:
        first, second = uuid.uuid4(), uuid.uuid4()
        ledger = CreditLedger(session)
        await ledger.allocate(first, 100, TransactionType.BONUS, "bonus")
        await ledger.allocate(second, 30, TransactionType.BONUS, "bonus")
        await ledger.deduct(first, 40, "usage")

        assert (await ledger.get_balance(first)).balance == 60
        assert (await ledger.get_balance(second)).balance == 30
