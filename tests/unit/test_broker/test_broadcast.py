"""Tests for the output broadcaster and observers."""

from __future__ import annotations

import pytest

from sessionbridge.broker.broadcast import Observer, OutputBroadcaster


class TestOutputBuffer:
    def test_append_accumulates(self) -> None:
        out = OutputBroadcaster(max_chars=100, keep_chars=50)
        out.append("hello ")
        out.append("world")
        assert out.buffer == "hello world"

    def test_truncates_to_most_recent_suffix(self) -> None:
        out = OutputBroadcaster(max_chars=10, keep_chars=4)
        out.append("abcdefgh")
        out.append("ijk")
        assert out.buffer == "hijk"

    def test_exactly_at_cap_is_not_truncated(self) -> None:
        out = OutputBroadcaster(max_chars=10, keep_chars=4)
        out.append("0123456789")
        assert out.buffer == "0123456789"

    def test_never_exceeds_cap(self) -> None:
        out = OutputBroadcaster(max_chars=50, keep_chars=20)
        text = "".join(chr(ord("a") + i % 26) for i in range(500))
        for i in range(0, 500, 7):
            out.append(text[i:i + 7])
            assert len(out.buffer) <= 50
        assert text.endswith(out.buffer)

    def test_empty_append_is_ignored(self) -> None:
        out = OutputBroadcaster(max_chars=10, keep_chars=4)
        out.append("")
        assert out.buffer == ""

    def test_keep_must_be_smaller_than_max(self) -> None:
        with pytest.raises(ValueError):
            OutputBroadcaster(max_chars=10, keep_chars=10)


class TestObservers:
    @pytest.mark.asyncio
    async def test_attach_replays_backlog_then_live(self) -> None:
        out = OutputBroadcaster()
        out.append("before ")
        obs = Observer("a")
        out.attach(obs)
        out.append("after")

        first = await obs.next()
        second = await obs.next()
        assert first == {"type": "output", "data": "before ", "backlog": True}
        assert second == {"type": "output", "data": "after"}
        assert obs.pending == 0

    @pytest.mark.asyncio
    async def test_attach_with_empty_buffer_sends_no_backlog(self) -> None:
        out = OutputBroadcaster()
        obs = Observer("a")
        out.attach(obs)
        out.append("x")
        assert await obs.next() == {"type": "output", "data": "x"}

    @pytest.mark.asyncio
    async def test_all_observers_see_same_order(self) -> None:
        out = OutputBroadcaster()
        a, b = Observer("a"), Observer("b")
        out.attach(a)
        out.attach(b)
        for chunk in ("1", "2", "3"):
            out.append(chunk)
        seen_a = [(await a.next())["data"] for _ in range(3)]
        seen_b = [(await b.next())["data"] for _ in range(3)]
        assert seen_a == seen_b == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_publish_is_not_buffered(self) -> None:
        out = OutputBroadcaster()
        obs = Observer("a")
        out.attach(obs)
        out.publish({"type": "status", "status": "running", "command": "ls"})
        assert out.buffer == ""
        assert (await obs.next())["type"] == "status"

    def test_detach_is_idempotent(self) -> None:
        out = OutputBroadcaster()
        obs = Observer("a")
        out.attach(obs)
        out.detach(obs)
        out.detach(obs)
        assert obs not in out.observers

    @pytest.mark.asyncio
    async def test_slow_observer_is_dropped_without_blocking(self) -> None:
        out = OutputBroadcaster()
        slow = Observer("slow", max_pending=2)
        fast = Observer("fast", max_pending=100)
        out.attach(slow)
        out.attach(fast)
        for i in range(5):
            out.append(str(i))

        assert slow.closed
        assert slow not in out.observers
        assert fast in out.observers
        assert [(await slow.next())["data"] for _ in range(2)] == ["0", "1"]
        assert await slow.next() is None

    @pytest.mark.asyncio
    async def test_close_ends_every_stream(self) -> None:
        out = OutputBroadcaster()
        obs = Observer("a")
        out.attach(obs)
        out.close()
        assert await obs.next() is None
        assert not out.observers
        assert obs.offer({"type": "output", "data": "late"}) is False

    @pytest.mark.asyncio
    async def test_attach_after_close_ends_immediately(self) -> None:
        out = OutputBroadcaster()
        out.append("left over")
        out.close()
        obs = Observer("late")
        out.attach(obs)
        assert out.closed
        assert obs.closed
        assert await obs.next() is None
        assert not out.observers
