"""ListenerRegistry tests."""

from __future__ import annotations

import asyncio

import pytest

from agi_driver.driver.listeners import ListenerRegistry


@pytest.fixture
def registry() -> ListenerRegistry:
    return ListenerRegistry({"thinking", "confirm"})


class TestRegistration:
    """Test add / remove / once."""

    def test_unknown_kind_rejected(self, registry: ListenerRegistry):
        with pytest.raises(ValueError, match="Unknown event kind"):
            registry.add("teleport", lambda: None)

    def test_registration_order(self, registry: ListenerRegistry):
        calls = []
        registry.add("thinking", lambda text: calls.append(("a", text)))
        registry.add("thinking", lambda text: calls.append(("b", text)))

        registry.emit("thinking", "hi")

        assert calls == [("a", "hi"), ("b", "hi")]

    def test_remove(self, registry: ListenerRegistry):
        calls = []
        listener = registry.add("thinking", calls.append)
        assert registry.remove("thinking", listener) is True
        assert registry.remove("thinking", listener) is False

        registry.emit("thinking", "hi")
        assert calls == []

    def test_once(self, registry: ListenerRegistry):
        calls = []
        registry.add("thinking", calls.append, once=True)

        registry.emit("thinking", "first")
        registry.emit("thinking", "second")

        assert calls == ["first"]
        assert registry.count("thinking") == 0

    def test_clear(self, registry: ListenerRegistry):
        registry.add("thinking", lambda text: None)
        registry.add("confirm", lambda reason: None)
        registry.clear("thinking")
        assert registry.count("thinking") == 0
        assert registry.count("confirm") == 1
        registry.clear()
        assert registry.count("confirm") == 0


class TestEmit:
    """Test notification dispatch."""

    def test_failing_listener_does_not_stop_others(self, registry: ListenerRegistry):
        calls = []

        def broken(text):
            raise RuntimeError("listener bug")

        registry.add("thinking", broken)
        registry.add("thinking", calls.append)

        registry.emit("thinking", "hi")
        assert calls == ["hi"]

    @pytest.mark.asyncio
    async def test_async_listener_scheduled(self, registry: ListenerRegistry):
        done = asyncio.Event()

        async def listener(text):
            done.set()

        registry.add("thinking", listener)
        registry.emit("thinking", "hi")

        await asyncio.wait_for(done.wait(), 1.0)


class TestCollectFirst:
    """Test interactive dispatch."""

    @pytest.mark.asyncio
    async def test_first_accepted_result_wins(self, registry: ListenerRegistry):
        responses = []

        async def approve(reason):
            return True

        registry.add("confirm", lambda reason: None)
        registry.add("confirm", approve)
        registry.add("confirm", lambda reason: False)

        responded = await registry.collect_first(
            "confirm", "why", accept=bool, on_response=responses.append
        )

        assert responded is True
        assert responses == [True]

    @pytest.mark.asyncio
    async def test_wrong_type_ignored(self, registry: ListenerRegistry):
        responses = []
        registry.add("confirm", lambda reason: "yes")

        responded = await registry.collect_first(
            "confirm", "why", accept=bool, on_response=responses.append
        )

        assert responded is False
        assert responses == []

    @pytest.mark.asyncio
    async def test_listeners_awaited_in_order(self, registry: ListenerRegistry):
        order = []

        async def slow(reason):
            await asyncio.sleep(0.05)
            order.append("slow")

        registry.add("confirm", slow)
        registry.add("confirm", lambda reason: order.append("fast"))

        await registry.collect_first("confirm", "why", accept=bool, on_response=lambda r: None)
        assert order == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_failing_listener_skipped(self, registry: ListenerRegistry):
        responses = []

        def broken(reason):
            raise RuntimeError("listener bug")

        registry.add("confirm", broken)
        registry.add("confirm", lambda reason: False)

        await registry.collect_first(
            "confirm", "why", accept=bool, on_response=responses.append
        )
        assert responses == [False]


class TestOncePerKind:
    """One-shot registrations are tracked per kind."""

    def test_once_does_not_leak_to_other_kind(self, registry: ListenerRegistry):
        calls = []

        def record(value):
            calls.append(value)

        registry.add("confirm", record, once=True)
        registry.add("thinking", record)

        registry.emit("thinking", "a")
        registry.emit("thinking", "b")

        assert calls == ["a", "b"]
        assert registry.count("confirm") == 1

    def test_remove_keeps_once_of_other_kind(self, registry: ListenerRegistry):
        calls = []

        def record(value):
            calls.append(value)

        registry.add("confirm", record, once=True)
        registry.add("thinking", record)
        registry.remove("thinking", record)

        registry.emit("confirm", "first")
        registry.emit("confirm", "second")

        assert calls == ["first"]
