"""
Tests for channels and the channel registry.
"""

import threading

import pytest

from chanflow.pipeline import END_OF_STREAM, Channel, ChannelRegistry


class TestChannel:
    """Test cases for Channel."""

    def test_fifo_order(self):
        """Items are received in the order they were sent."""
        channel = Channel("numbers")
        for i in range(5):
            channel.send(i)
        channel.close()

        assert channel.drain() == [0, 1, 2, 3, 4]

    def test_end_of_stream_after_drain(self):
        """A closed channel yields END_OF_STREAM once buffered items are consumed."""
        channel = Channel.of("a")

        assert channel.next() == "a"
        assert channel.next() is END_OF_STREAM
        assert channel.next() is END_OF_STREAM

    def test_close_is_idempotent(self):
        """Closing twice has no further effect."""
        channel = Channel("x")
        channel.close()
        channel.close()

        assert channel.closed

    def test_send_after_close_is_dropped(self):
        """Items sent to a closed channel are dropped."""
        channel = Channel.of(1)

        assert channel.send(2) is False
        assert channel.drain() == [1]
        assert channel.sent_count == 1

    def test_cannot_send_end_of_stream(self):
        """The end marker can only be produced by close()."""
        with pytest.raises(ValueError):
            Channel("x").send(END_OF_STREAM)

    def test_next_timeout(self):
        """next() raises TimeoutError when nothing arrives in time."""
        with pytest.raises(TimeoutError):
            Channel("slow").next(timeout=0.01)

    def test_next_blocks_until_item(self):
        """A consumer waiting on an empty channel wakes up on send."""
        channel = Channel("late")
        received = []

        consumer = threading.Thread(target=lambda: received.extend(channel))
        consumer.start()
        channel.send("first")
        channel.send("second")
        channel.close()
        consumer.join(timeout=5)

        assert not consumer.is_alive()
        assert received == ["first", "second"]

    def test_competing_consumers(self):
        """Each item is delivered to exactly one consumer."""
        channel = Channel.from_iterable(range(100), name="work")
        results = [[], []]

        threads = [
            threading.Thread(target=lambda out=out: out.extend(channel))
            for out in results
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert sorted(results[0] + results[1]) == list(range(100))

    def test_end_of_stream_is_falsy(self):
        """The end marker is a falsy singleton."""
        assert not END_OF_STREAM
        assert repr(END_OF_STREAM) == "END_OF_STREAM"

    def test_len_counts_pending_items(self):
        """len() reports items not yet consumed."""
        channel = Channel.of(1, 2, 3)
        channel.next()

        assert len(channel) == 2


class TestChannelRegistry:
    """Test cases for ChannelRegistry."""

    def test_declare_and_get(self):
        """Declared channels are retrievable by name."""
        registry = ChannelRegistry()
        channel = registry.declare("reads")

        assert registry["reads"] is channel
        assert "reads" in registry
        assert channel.name == "reads"

    def test_declare_existing_channel_object(self):
        """An unnamed channel takes the declared name."""
        registry = ChannelRegistry()
        channel = registry.declare("samples", Channel())

        assert channel.name == "samples"

    def test_declare_duplicate(self):
        """Declaring the same name twice is an error."""
        registry = ChannelRegistry()
        registry.declare("reads")

        with pytest.raises(ValueError, match="already declared"):
            registry.declare("reads")

    def test_get_or_create_is_lazy(self):
        """Referencing an undeclared name creates the channel once."""
        registry = ChannelRegistry()
        first = registry.get_or_create("out")
        second = registry.get_or_create("out")

        assert first is second
        assert registry.names() == ["out"]

    def test_missing_channel(self):
        """Unknown names are reported."""
        registry = ChannelRegistry()

        assert registry.get("nope") is None
        with pytest.raises(KeyError):
            registry["nope"]

    def test_close_all(self):
        """close_all closes every registered channel."""
        registry = ChannelRegistry()
        a = registry.declare("a")
        b = registry.get_or_create("b")
        registry.close_all()

        assert a.closed and b.closed
