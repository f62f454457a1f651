import asyncio

from hubbridge.lib.reporter import Reporter


async def test_reports_run_in_submission_order():
    reporter = Reporter()
    order = []

    def report(name, delay):
        async def run():
            await asyncio.sleep(delay)
            order.append(name)
        return run

    reporter.submit("start", report("start", 0.05))
    reporter.submit("progress", report("progress", 0))
    reporter.submit("stop", report("stop", 0.01))
    assert reporter.pending == 3

    await reporter.drain()

    assert order == ["start", "progress", "stop"]
    assert reporter.pending == 0


async def test_failure_does_not_block_later_reports():
    reporter = Reporter()
    order = []

    async def failing():
        raise ConnectionError("hub down")

    async def stop():
        order.append("stop")

    first = reporter.submit("mark played", failing)
    reporter.submit("stop", stop)
    await reporter.drain()

    assert first.result() is False
    assert order == ["stop"]


async def test_drain_gives_up_after_timeout():
    reporter = Reporter()
    gate = asyncio.Event()

    async def stuck():
        await gate.wait()

    reporter.submit("stop", stuck)
    await reporter.drain(timeout=0.01)

    assert reporter.pending == 1
    gate.set()
    await reporter.drain()
    assert reporter.pending == 0


async def test_drain_with_nothing_submitted():
    await Reporter().drain()
