"""Tests for usage metering.

A usage record is written for every metered action whatever happens
to its deduction, and failed deductions are marked on the record.
"""

import uuid
from datetime import timedelta

import pytest
from hypothesis import given, settings, strategies as st

from creditflow.modules.billing.exceptions import InsufficientCredits
from creditflow.modules.billing.ledger import CreditLedger
from creditflow.modules.billing.metering import (
    UsageRecorder,
    aggregate_usage,
    integration_query_cost,
)
from creditflow.modules.billing.models import (
    TransactionType,
    UsageRecord,
    UsageResourceType,
    utc_now,
)


class TestIntegrationQueryCost:

    @given(execution_ms=st.integers(min_value=0, max_value=600_000))
    @settings(max_examples=100)
    def test_cost_formula(self, execution_ms: int) -> None:
        cost = integration_query_cost(execution_ms)

        assert cost == -(-execution_ms // 100) + 1
        assert cost >= 1

    @pytest.mark.parametrize(
        "execution_ms,expected",
        [(0, 1), (1, 2), (100, 2), (101, 3), (250, 4), (1000, 11)],
    )
    def test_known_costs(self, execution_ms: int, expected: int) -> None:
        assert integration_query_cost(execution_ms) == expected

    def test_negative_time_rejected(self) -> None:
        with pytest.raises(ValueError):
            integration_query_cost(-1)


class TestAggregateUsage:

    def test_failed_deductions_do_not_count_as_spent(self) -> None:
        member_id = uuid.uuid4()
        records = [
            UsageRecord(member_id=member_id, resource_type="api_call", quantity=1, credit_cost=5),
            UsageRecord(member_id=member_id, resource_type="api_call", quantity=2, credit_cost=7,
                        usage_metadata={"creditDeductionFailed": True}),
            UsageRecord(member_id=member_id, resource_type="llm_tokens", quantity=900, credit_cost=12),
        ]

        by_type, spent = aggregate_usage(records)

        assert spent == 17
        assert [u.resource_type for u in by_type] == ["api_call", "llm_tokens"]
        api_calls = by_type[0]
        assert api_calls.count == 2
        assert api_calls.total_quantity == 3
        assert api_calls.total_credit_cost == 12


class TestUsageRecorder:

    @pytest.mark.asyncio
    async def test_successful_usage_is_charged(self, session) -> None:
        member_id = uuid.uuid4()
        await CreditLedger(session).allocate(member_id, 100, TransactionType.BONUS, "bonus")
        recorder = UsageRecorder(session)

        result = await recorder.record_usage(
            member_id=member_id,
            resource_type=UsageResourceType.LLM_TOKENS,
            quantity=1200,
            credit_cost=30,
            chat_id="chat-1",
            model_id="gpt-4o",
            prompt_tokens=1000,
            completion_tokens=200,
        )

        assert result.new_balance == 70
        records = await recorder.list_usage(member_id)
        assert len(records) == 1
        assert records[0].id == result.usage_record_id
        assert not records[0].deduction_failed

        latest = (await CreditLedger(session).list_transactions(member_id, limit=1))[0]
        assert latest.amount == -30
        assert latest.type == TransactionType.USAGE_DEDUCTION.value
        assert latest.usage_record_id == result.usage_record_id
        assert latest.chat_id == "chat-1"

    @pytest.mark.asyncio
    async def test_failed_deduction_keeps_annotated_record(self, session) -> None:
        member_id = uuid.uuid4()
        await CreditLedger(session).allocate(member_id, 10, TransactionType.BONUS, "bonus")
        recorder = UsageRecorder(session)

        with pytest.raises(InsufficientCredits):
            await recorder.record_usage(
                member_id=member_id,
                resource_type=UsageResourceType.API_CALL,
                quantity=1,
                credit_cost=25,
                metadata={"endpoint": "/v1/things"},
            )

        records = await recorder.list_usage(member_id)
        assert len(records) == 1
        record = records[0]
        assert record.deduction_failed
        assert record.usage_metadata["endpoint"] == "/v1/things"
        assert "Insufficient credits" in record.usage_metadata["error"]

        snapshot = await CreditLedger(session).get_balance(member_id)
        assert snapshot.balance == 10
        assert len(await CreditLedger(session).list_transactions(member_id)) == 1

    @pytest.mark.asyncio
    async def test_usage_stats(self, session) -> None:
        member_id = uuid.uuid4()
        await CreditLedger(session).allocate(member_id, 20, TransactionType.BONUS, "bonus")
        recorder = UsageRecorder(session)

        await recorder.record_usage(member_id, UsageResourceType.API_CALL, 1, 5)
        await recorder.record_usage(member_id, UsageResourceType.STORAGE, 3, 10)
        with pytest.raises(InsufficientCredits):
            await recorder.record_usage(member_id, UsageResourceType.API_CALL, 1, 50)

        stats = await recorder.get_usage_stats(
            member_id,
            start=utc_now() - timedelta(days=1),
            end=utc_now() + timedelta(minutes=1),
        )

        assert stats.total_records == 3
        assert stats.total_credits_spent == 15
        by_type = {u.resource_type: u for u in stats.by_resource_type}
        assert by_type["api_call"].count == 2
        assert by_type["storage"].total_quantity == 3

    @pytest.mark.asyncio
    async def test_usage_stats_window_excludes_other_members(self, session) -> None:
        recorder = UsageRecorder(session)
        other = uuid.uuid4()
        await CreditLedger(session).allocate(other, 20, TransactionType.BONUS, "bonus")
        await recorder.record_usage(other, UsageResourceType.API_CALL, 1, 5)

        stats = await recorder.get_usage_stats(uuid.uuid4())

        assert stats.total_records == 0
        assert stats.total_credits_spent == 0
