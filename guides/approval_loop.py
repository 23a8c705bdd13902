"""Retry a flaky call with ``until`` and wait for a human with suspend/resume."""

import asyncio
import random

from stepflow import Step, Workflow, get_engine


def call_partner(ctx):
    # succeeds roughly every other attempt
    ok = random.random() > 0.5 or ctx.iteration >= 5
    return {"ok": ok, "attempt": ctx.iteration}


def request_approval(ctx):
    if ctx.resume_data is None:
        ctx.suspend({"question": f"Approve refund of {ctx.input['amount']}?"})
        return None
    return {"approved": ctx.input["approved"]}


def refund(ctx):
    return {"refunded": ctx.input["amount"]}


partner = Step(id="partner", execute=call_partner)

refund_workflow = (
    Workflow("refund", description="Partner call with retries, then manual approval")
    .step(partner)
    .until({"partner.output.ok": True}, partner)
    .then(Step(id="approval", execute=request_approval))
    .then(
        Step(id="refund", execute=refund),
        when={"ref": {"step": "approval", "path": "approved"}, "query": {"$eq": True}},
    )
    .commit()
)


async def main():
    handle = get_engine().register(refund_workflow)
    started = await handle.start_run({"amount": 30})

    async def print_transitions():
        async for record in handle.watch(started.run_id):
            statuses = {
                step_id: step["status"] for step_id, step in record.context["steps"].items()
            }
            print(f"{record.timestamp}: {statuses}")

    watcher = asyncio.create_task(print_transitions())

    suspended = await handle.wait(started.run_id)
    print(f"Waiting on: {suspended.suspended_steps}")

    result = await handle.resume(started.run_id, "approval", {"approved": True})
    await watcher
    print(f"Refund: {result.output_of('refund')}")


if __name__ == "__main__":
    asyncio.run(main())
