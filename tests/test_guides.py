"""Run the guide workflows end to end."""

import sys
from pathlib import Path
from unittest import mock

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from guides.approval_loop import refund_workflow
from guides.parallel_join import order_workflow
from stepflow.contracts import RunStatus


@pytest.mark.asyncio
async def test_order_summary_guide(engine):
    handle = engine.register(order_workflow)

    result = await handle.execute({"order_id": "A-17"})

    assert result.output_of("summarize") == {
        "order_id": "A-17",
        "total": 42.5,
        "ready": True,
        "eta_days": 3,
    }


@pytest.mark.asyncio
async def test_refund_guide(engine):
    handle = engine.register(refund_workflow)

    with mock.patch("guides.approval_loop.random.random", side_effect=[0.1, 0.2, 0.9]):
        suspended = await handle.execute({"amount": 30})

    assert suspended.status == RunStatus.SUSPENDED
    assert suspended.output_of("partner") == {"ok": True, "attempt": 3}

    result = await handle.resume(suspended.run_id, "approval", {"approved": True})
    assert result.output_of("refund") == {"refunded": 30}
