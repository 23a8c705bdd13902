"""Fan out to three enrichment steps and join their results."""

import asyncio

from stepflow import Step, Workflow, get_engine


async def fetch_order(ctx):
    return {"order_id": ctx.input["order_id"], "items": ["book", "lamp"]}


async def price(ctx):
    await asyncio.sleep(0.05)
    return {"total": 42.5}


async def stock(ctx):
    await asyncio.sleep(0.02)
    return {"available": True}


def shipping(ctx):
    return {"carrier": "post", "days": 3}


def summarize(ctx):
    order = ctx.get_step_result("fetch")
    return {
        "order_id": order["order_id"],
        "total": ctx.get_step_result("price")["total"],
        "ready": ctx.get_step_result("stock")["available"],
        "eta_days": ctx.get_step_result("shipping")["days"],
    }


order_workflow = (
    Workflow("order-summary", name="Order summary", description="Fan-out and join")
    .step(Step(id="fetch", execute=fetch_order))
    .then(
        [
            Step(id="price", execute=price),
            Step(id="stock", execute=stock),
            Step(id="shipping", execute=shipping),
        ]
    )
    .then(Step(id="summarize", execute=summarize))
    .commit()
)


async def main():
    handle = get_engine().register(order_workflow)
    result = await handle.execute({"order_id": "A-17"})
    print(f"Run {result.run_id}: {result.status.value}")
    print(f"Summary: {result.output_of('summarize')}")


if __name__ == "__main__":
    asyncio.run(main())
