"""Tests for the bounded output buffer and the terminal log sink."""

import pytest

from bump_bridge.core.output import LogSink, OutputBuffer


class TestOutputBuffer:
    def test_keeps_output_in_order(self):
        buffer = OutputBuffer(64)
        for chunk in (b"one ", b"two ", b"three"):
            buffer.append(chunk)

        assert buffer.getvalue() == b"one two three"
        assert len(buffer) == 13

    def test_evicts_oldest_bytes(self):
        buffer = OutputBuffer(8)
        buffer.append(b"abcdef")
        buffer.append(b"ghij")

        assert buffer.getvalue() == b"cdefghij"

    def test_chunk_larger_than_capacity(self):
        buffer = OutputBuffer(4)
        buffer.append(b"0123456789")

        assert buffer.getvalue() == b"6789"

    def test_suffix_property_over_many_appends(self):
        buffer = OutputBuffer(10)
        produced = b""
        for i in range(50):
            chunk = str(i).encode() * (i % 4)
            buffer.append(chunk)
            produced += chunk

        assert buffer.getvalue() == produced[-10:]

    def test_text_replaces_invalid_utf8(self):
        buffer = OutputBuffer(16)
        buffer.append("héllo".encode()[:2])

        assert buffer.text() == "h�"

    def test_clear(self):
        buffer = OutputBuffer(16)
        buffer.append(b"data")
        buffer.clear()

        assert buffer.getvalue() == b""

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            OutputBuffer(0)


class TestLogSink:
    @pytest.mark.asyncio
    async def test_write_appends(self, tmp_path):
        sink = LogSink(tmp_path / "logs" / "term-1.log")
        await sink.open()
        await sink.write(b"first\n")
        await sink.write(b"second\n")
        await sink.close()

        assert (tmp_path / "logs" / "term-1.log").read_bytes() == b"first\nsecond\n"

    @pytest.mark.asyncio
    async def test_open_truncates_stale_log(self, tmp_path):
        path = tmp_path / "term-1.log"
        path.write_bytes(b"stale")

        sink = LogSink(path)
        await sink.open()
        await sink.close()

        assert path.read_bytes() == b""

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_can_remove(self, tmp_path):
        path = tmp_path / "term-1.log"
        sink = LogSink(path)
        await sink.open()

        await sink.close(remove=True)
        await sink.close(remove=True)

        assert not path.exists()
        assert not sink.is_open

    @pytest.mark.asyncio
    async def test_write_after_close_is_ignored(self, tmp_path):
        sink = LogSink(tmp_path / "term-1.log")
        await sink.open()
        await sink.close()

        await sink.write(b"late")

        assert (tmp_path / "term-1.log").read_bytes() == b""
