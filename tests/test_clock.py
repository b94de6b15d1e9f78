import asyncio

from snipr.clock import PauseManager, Ticker

from conftest import FakeClock, run


def _counter(calls, reached, target):
    def on_tick():
        calls.append(1)
        if len(calls) >= target:
            reached.set()

    return on_tick


def test_ticker_calls_back_until_cancelled():
    async def scenario():
        calls, reached = [], asyncio.Event()
        ticker = Ticker(_counter(calls, reached, 3), interval_ms=50)
        ticker.start()
        await asyncio.wait_for(reached.wait(), timeout=10)
        ticker.cancel()
        seen = len(calls)
        await asyncio.sleep(0.2)
        return seen, len(calls), ticker.running

    seen, after_cancel, running = run(scenario())
    assert seen >= 3
    assert after_cancel == seen
    assert not running


def test_paused_ticker_skips_callback():
    async def scenario():
        calls, reached = [], asyncio.Event()
        ticker = Ticker(_counter(calls, reached, 1), interval_ms=50)
        ticker.pause()
        ticker.start()
        await asyncio.sleep(0.3)
        paused_calls = len(calls)
        ticker.unpause()
        await asyncio.wait_for(reached.wait(), timeout=10)
        ticker.cancel()
        return paused_calls, len(calls)

    paused_calls, total = run(scenario())
    assert paused_calls == 0
    assert total >= 1


def test_ticker_survives_callback_errors(caplog):
    async def scenario():
        calls, reached = [], asyncio.Event()
        count = _counter(calls, reached, 2)

        async def on_tick():
            count()
            raise ValueError("tick failed")

        ticker = Ticker(on_tick, interval_ms=50)
        ticker.start()
        await asyncio.wait_for(reached.wait(), timeout=10)
        ticker.cancel()
        return len(calls)

    assert run(scenario()) >= 2
    assert "tick failed" in caplog.text


def test_pause_manager_auto_resumes():
    clock = FakeClock()
    pause = PauseManager(clock)
    assert not pause.is_paused()
    pause.pause(seconds=30)
    assert pause.is_paused()
    clock.advance(29)
    assert pause.is_paused()
    clock.advance(1)
    assert not pause.is_paused()


def test_pause_without_deadline_holds_until_resumed():
    clock = FakeClock()
    pause = PauseManager(clock)
    pause.pause()
    clock.advance(10_000)
    assert pause.is_paused()
    pause.resume()
    assert not pause.is_paused()
