"""Unit tests for context channels."""
import threading

import numpy as np
import pytest

from camtext.core.channel import (
    ERROR_TYPE, Message, ProcessChannel, ThreadChannel, dispatch, error_message,
)
from camtext.core.exceptions import ChannelClosedError, ContextTimeoutError, ShapeMismatch


class EchoHandler:
    """Replies with the payload it received; module-level so it can be pickled."""

    def handle(self, message: Message) -> Message:
        if message.type == "boom":
            raise ShapeMismatch("bad heatmap")
        return Message("echo", message.data)


class RecordingHandler:
    instances = []

    def __init__(self):
        self.closed = threading.Event()
        self.seen = []
        RecordingHandler.instances.append(self)

    def handle(self, message: Message) -> Message:
        self.seen.append(message.data)
        return Message("seen", {"count": len(self.seen)})

    def close(self):
        self.closed.set()


class TestDispatch:

    def test_exception_becomes_error_reply(self):
        reply = dispatch(EchoHandler(), Message("boom"))
        assert reply.type == ERROR_TYPE
        assert reply.data == {"error": "bad heatmap", "error_type": "ShapeMismatch"}

    def test_error_message_without_text(self):
        assert error_message(RuntimeError()).data["error"] == "RuntimeError"


class TestThreadChannel:

    @pytest.fixture
    def channel(self):
        channel = ThreadChannel(EchoHandler, name="unit")
        channel.start()
        yield channel
        channel.close()

    def test_round_trip(self, channel):
        channel.send(Message("ping", {"value": 3}))
        reply = channel.receive(timeout=2)
        assert reply.type == "echo"
        assert reply.data == {"value": 3}
        assert channel.is_alive

    def test_payload_is_not_shared(self, channel):
        buffer = np.zeros(4)
        payload = {"buffer": buffer}
        channel.send(Message("ping", payload))
        reply = channel.receive(timeout=2)

        buffer[:] = 7
        assert reply.data["buffer"] is not buffer
        assert (reply.data["buffer"] == 0).all()

    def test_handler_error_reply(self, channel):
        channel.send(Message("boom"))
        reply = channel.receive(timeout=2)
        assert reply.type == ERROR_TYPE
        assert reply.data["error_type"] == "ShapeMismatch"

    def test_receive_timeout(self, channel):
        with pytest.raises(ContextTimeoutError):
            channel.receive(timeout=0.05)

    def test_closed_channel(self, channel):
        channel.close()
        assert not channel.is_alive
        with pytest.raises(ChannelClosedError):
            channel.send(Message("ping"))
        with pytest.raises(ChannelClosedError):
            channel.receive(timeout=0.1)

    def test_close_unblocks_receiver(self):
        channel = ThreadChannel(EchoHandler, name="blocked")
        channel.start()
        errors = []

        def wait():
            try:
                channel.receive(timeout=5)
            except ChannelClosedError as e:
                errors.append(e)

        waiter = threading.Thread(target=wait)
        waiter.start()
        channel.close()
        waiter.join(timeout=2)
        assert len(errors) == 1

    def test_handler_closed_on_exit(self):
        RecordingHandler.instances.clear()
        channel = ThreadChannel(RecordingHandler, name="rec")
        channel.start()
        channel.send(Message("a", {"n": 1}))
        assert channel.receive(timeout=2).data == {"count": 1}
        channel.close()

        handler = RecordingHandler.instances[0]
        assert handler.closed.wait(2)


@pytest.mark.process
class TestProcessChannel:

    def test_round_trip_and_close(self):
        channel = ProcessChannel(EchoHandler, name="proc", join_timeout=5.0)
        channel.start()
        try:
            channel.send(Message("ping", {"buffer": np.arange(6).reshape(2, 3)}))
            reply = channel.receive(timeout=30)
            assert reply.type == "echo"
            assert reply.data["buffer"].tolist() == [[0, 1, 2], [3, 4, 5]]

            channel.send(Message("boom"))
            assert channel.receive(timeout=30).data["error_type"] == "ShapeMismatch"
        finally:
            channel.close()
        assert not channel.is_alive
        with pytest.raises(ChannelClosedError):
            channel.send(Message("ping"))
