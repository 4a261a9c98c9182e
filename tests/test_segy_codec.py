"""
Tests for the SEG-Y header codec and trace reader.
"""
import struct

import numpy as np
import pytest


def _header_buffer(samples=1501, interval=2000, format_code=5):
    """3600-byte file header with the sample fields set directly."""
    buffer = bytearray(3600)
    buffer[:3200] = ('C 1 SYNTHETIC'.ljust(80) * 40).encode('cp500')
    struct.pack_into('>H', buffer, 3216, interval)
    struct.pack_into('>H', buffer, 3220, samples)
    struct.pack_into('>h', buffer, 3224, format_code)
    return bytes(buffer)


class TestSegyHeaderDecode:
    """Tests for SegyHeaderCodec.decode."""

    def test_sample_fields_at_documented_offsets(self):
        """Test binary header offsets 16 and 20 hold interval and samples."""
        from seisio.segy_codec import SegyHeaderCodec

        header = SegyHeaderCodec().decode(_header_buffer(samples=1501, interval=2000))

        assert header.samples == 1501
        assert header.sample_interval == 2000
        assert header.samples_per_trace == 1501
        assert header.sample_interval_us == 2000.0

    def test_short_buffer_is_malformed(self):
        """Test a buffer shorter than 3600 bytes is rejected."""
        from seisio.segy_codec import SegyHeaderCodec
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError) as exc_info:
            SegyHeaderCodec().decode(b'\x00' * 3599)

        assert exc_info.value.stage == 'header'
        assert '3599' in exc_info.value.message

    def test_zero_interval_is_malformed(self):
        """Test a zero sample interval is rejected."""
        from seisio.segy_codec import SegyHeaderCodec
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError, match='zero sample interval'):
            SegyHeaderCodec().decode(_header_buffer(interval=0))

    def test_zero_samples_is_malformed(self):
        """Test zero samples per trace is rejected."""
        from seisio.segy_codec import SegyHeaderCodec
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError, match='zero samples'):
            SegyHeaderCodec().decode(_header_buffer(samples=0))

    def test_text_encoding_detection(self):
        """Test EBCDIC, ASCII and blank textual headers are told apart."""
        from seisio.segy_codec import SegyHeaderCodec

        codec = SegyHeaderCodec()
        ebcdic = codec.decode(_header_buffer())
        assert ebcdic.text_encoding == 'ebcdic'
        assert ebcdic.text_lines()[0].startswith('C 1 SYNTHETIC')

        ascii_buffer = bytearray(_header_buffer())
        ascii_buffer[:3200] = ('C 1 ASCII'.ljust(80) * 40).encode('ascii')
        assert codec.decode(bytes(ascii_buffer)).text_encoding == 'ascii'

        blank_buffer = bytearray(_header_buffer())
        blank_buffer[:3200] = bytes(3200)
        blank = codec.decode(bytes(blank_buffer))
        assert blank.text_encoding == 'blank'
        assert any('blank' in note for note in blank.notes)

    def test_unknown_format_code_is_noted(self):
        """Test an unknown sample format becomes a note, not a failure."""
        from seisio.segy_codec import SegyHeaderCodec

        header = SegyHeaderCodec().decode(_header_buffer(format_code=42))
        assert any('42' in note for note in header.notes)


class TestSegyHeaderRoundTrip:
    """Tests for encode(decode(b)) == b over the owned fields."""

    def test_round_trip_preserves_bytes(self, segy_bytes):
        """Test the 3600-byte file header is reproduced exactly."""
        from seisio.segy_codec import SegyHeaderCodec

        codec = SegyHeaderCodec()
        header = codec.decode(segy_bytes)
        assert codec.encode(header) == segy_bytes[:3600]

    def test_round_trip_keeps_unowned_bytes(self):
        """Test binary header bytes outside the owned fields pass through."""
        from seisio.segy_codec import SegyHeaderCodec

        buffer = bytearray(_header_buffer())
        buffer[3500:3504] = b'\xde\xad\xbe\xef'
        codec = SegyHeaderCodec()
        assert codec.encode(codec.decode(bytes(buffer))) == bytes(buffer)

    def test_encode_applies_changed_fields(self):
        """Test a replaced field wins over the raw bytes."""
        import dataclasses
        from seisio.segy_codec import SegyHeaderCodec

        codec = SegyHeaderCodec()
        header = dataclasses.replace(codec.decode(_header_buffer()), samples=750)
        encoded = codec.encode(header)

        assert struct.unpack_from('>H', encoded, 3220)[0] == 750
        assert codec.decode(encoded).samples == 750

    def test_create_builds_decodable_header(self):
        """Test SegyHeader.create output decodes to the same values."""
        from seisio.segy_codec import SegyHeader, SegyHeaderCodec

        codec = SegyHeaderCodec()
        header = SegyHeader.create(samples=500, sample_interval=4000)
        decoded = codec.decode(codec.encode(header))

        assert decoded.samples == 500
        assert decoded.sample_interval == 4000
        assert decoded.format_code == 5
        assert decoded.units == 'm'


class TestSegyTraces:
    """Tests for reading trace samples."""

    def test_read_ieee_traces(self, segy_bytes, grid_traces):
        """Test samples, line numbers and scaled coordinates are decoded."""
        from seisio.segy_codec import SegyHeaderCodec

        traces, inlines, crosslines = grid_traces
        codec = SegyHeaderCodec()
        block = codec.read_traces(segy_bytes, codec.decode(segy_bytes))

        np.testing.assert_array_equal(block.samples, traces)
        np.testing.assert_array_equal(block.inlines, inlines)
        np.testing.assert_array_equal(block.crosslines, crosslines)
        assert block.cdp_x[0] == pytest.approx(500000.0)
        assert block.cdp_y[1] == pytest.approx(700040.0)
        assert block.warnings == ()

    def test_chunked_read_matches_single_read(self, segy_bytes):
        """Test tiny chunks give the same samples as one chunk."""
        from seisio.segy_codec import SegyHeaderCodec

        codec = SegyHeaderCodec()
        header = codec.decode(segy_bytes)
        whole = codec.read_traces(segy_bytes, header)
        chunked = codec.read_traces(segy_bytes, header, chunk_bytes=1)

        np.testing.assert_array_equal(whole.samples, chunked.samples)

    def test_partial_trace_is_ignored_with_warning(self, segy_factory, grid_traces):
        """Test trailing bytes that do not form a trace are reported."""
        from seisio.segy_codec import SegyHeaderCodec

        traces, inlines, crosslines = grid_traces
        data = segy_factory(traces, inlines=inlines, crosslines=crosslines, trailing=b'\x00' * 17)
        codec = SegyHeaderCodec()
        block = codec.read_traces(data, codec.decode(data))

        assert block.n_traces == len(traces)
        assert any('17 trailing bytes' in w for w in block.warnings)

    def test_no_traces_is_malformed(self):
        """Test a header-only buffer has no traces to read."""
        from seisio.segy_codec import SegyHeaderCodec
        from seisio.errors import MalformedHeaderError

        codec = SegyHeaderCodec()
        data = _header_buffer(samples=10)
        with pytest.raises(MalformedHeaderError, match='no complete traces'):
            codec.read_traces(data, codec.decode(data))

    def test_int32_samples(self, segy_factory):
        """Test integer sample formats are converted to float32."""
        from seisio.segy_codec import SegyHeaderCodec

        traces = np.arange(20, dtype=np.int32).reshape(2, 10) - 5
        data = segy_factory(traces, format_code=2)
        codec = SegyHeaderCodec()
        block = codec.read_traces(data, codec.decode(data))

        assert block.samples.dtype == np.float32
        np.testing.assert_array_equal(block.samples, traces.astype(np.float32))

    def test_segyio_ibm_file(self, segyio_file, grid_traces):
        """Test an IBM-float file written by segyio decodes to the same samples."""
        from seisio.segy_codec import SegyHeaderCodec

        traces, inlines, _ = grid_traces
        data = segyio_file.read_bytes()
        codec = SegyHeaderCodec()
        header = codec.decode(data)
        block = codec.read_traces(data, header)

        assert header.format_code == 1
        assert header.sample_interval == 2000
        np.testing.assert_allclose(block.samples, traces, rtol=1e-5, atol=1e-5)
        np.testing.assert_array_equal(block.inlines, inlines)

    def test_cancelled_token_stops_reading(self, segy_bytes):
        """Test a cancelled token aborts the chunk loop."""
        from seisio.segy_codec import SegyHeaderCodec
        from utils.cancellation import CancellationToken, CancellationError

        codec = SegyHeaderCodec()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancellationError):
            codec.read_traces(segy_bytes, codec.decode(segy_bytes), token=token)


class TestIbmConversion:
    """Tests for ibm_to_ieee."""

    def test_known_values(self):
        """Test textbook IBM words."""
        from seisio.segy_codec import ibm_to_ieee

        words = np.array([0x41100000, 0xC276A000, 0x00000000], dtype=np.uint32)
        np.testing.assert_allclose(ibm_to_ieee(words), [1.0, -118.625, 0.0])
