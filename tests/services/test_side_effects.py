from forum_stage.core.side_effects import best_effort


async def test_best_effort_awaits_coroutines():
    calls = []

    async def action():
        calls.append("ran")

    assert await best_effort("async action", action) is True
    assert calls == ["ran"]


async def test_best_effort_accepts_plain_callables():
    calls = []
    assert await best_effort("sync action", lambda: calls.append("ran")) is True
    assert calls == ["ran"]


async def test_best_effort_swallows_and_logs_failures(caplog):
    async def explode():
        raise ConnectionError("redis unavailable")

    assert await best_effort("cache invalidate", explode) is False
    assert "Best-effort side effect cache invalidate failed: redis unavailable" in caplog.text


async def test_best_effort_swallows_sync_failures():
    def explode():
        raise ValueError("bad")

    assert await best_effort("sync", explode) is False
