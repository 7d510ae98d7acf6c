"""
Tests for the job message channel.
"""
import asyncio
import threading
import time

import pytest

from metadata_service.core.channel import MessageChannel
from metadata_service.schemas.build import (
    ErrorMessage,
    JobStatus,
    LogMessage,
    StatusMessage,
    SuccessMessage,
    encode_message,
)


def _log(n):
    return LogMessage(job_id="j", line=f"line {n}")


class TestMessageChannel:
    """Tests for buffering and delivery."""

    def test_fifo_order(self):
        channel = MessageChannel(10)
        for i in range(3):
            channel.put(_log(i))
        channel.close()
        assert [m.line for m in channel] == ["line 0", "line 1", "line 2"]

    def test_drops_oldest_log_when_full(self):
        """A full buffer sheds the oldest log line, never the status message."""
        channel = MessageChannel(3)
        channel.put(StatusMessage(job_id="j", status=JobStatus.BUILDING))
        for i in range(5):
            channel.put(_log(i))
        channel.close()

        messages = list(channel)
        assert isinstance(messages[0], StatusMessage)
        assert [m.line for m in messages[1:]] == ["line 3", "line 4"]
        assert channel.dropped == 3

    def test_terminal_message_survives_full_buffer(self):
        channel = MessageChannel(2)
        channel.put(_log(0))
        channel.put(_log(1))
        channel.put(ErrorMessage(job_id="j", reason="timeout", error="too slow"))
        channel.close()

        assert list(channel)[-1].type == "error"

    def test_put_after_close_raises(self):
        channel = MessageChannel()
        channel.close()
        with pytest.raises(RuntimeError):
            channel.put(_log(0))

    def test_get_timeout(self):
        with pytest.raises(TimeoutError):
            MessageChannel().get(timeout=0.01)

    def test_reader_in_other_thread(self):
        """Messages written by a worker thread reach the reader."""
        channel = MessageChannel()

        def produce():
            for i in range(50):
                channel.put(_log(i))
            channel.close()

        worker = threading.Thread(target=produce)
        worker.start()
        received = list(channel)
        worker.join()

        assert len(received) == 50

    def test_async_iteration(self):
        channel = MessageChannel()
        channel.put(_log(0))
        channel.put(SuccessMessage(job_id="j", hash="ab" * 32, metadata={"name": "x"}))
        channel.close()

        async def collect():
            return [m async for m in channel.aiter()]

        messages = asyncio.run(collect())
        assert [m.type for m in messages] == ["log", "success"]

    def test_async_reader_woken_by_worker_thread(self):
        """An idle async reader receives messages put later from another thread."""
        channel = MessageChannel()

        def produce():
            time.sleep(0.05)
            for i in range(3):
                channel.put(_log(i))
            channel.close()

        async def collect():
            worker = threading.Thread(target=produce)
            worker.start()
            try:
                return [m.line async for m in channel.aiter()]
            finally:
                worker.join()

        lines = asyncio.run(asyncio.wait_for(collect(), timeout=5))

        assert lines == ["line 0", "line 1", "line 2"]
        assert channel._waiters == []


class TestEncodeMessage:
    """Tests for the NDJSON wire form."""

    def test_one_line_per_message(self):
        encoded = encode_message(StatusMessage(job_id="j", status=JobStatus.EXTRACTING_METADATA))
        assert encoded.endswith(b"\n")
        assert encoded.count(b"\n") == 1
        assert b'"status":"extracting-metadata"' in encoded

    def test_log_lines_with_newlines_stay_on_one_line(self):
        encoded = encode_message(LogMessage(job_id="j", line="a\nb"))
        assert encoded.count(b"\n") == 1
