"""
Tests for the Seismic Unix, SEG-D, raw binary and NetCDF codecs.
"""
import struct

import numpy as np
import pytest


def _su_bytes(traces, interval=4000, order='<'):
    parts = []
    for n, trace in enumerate(traces):
        header = bytearray(240)
        struct.pack_into(order + 'H', header, 114, len(trace))
        struct.pack_into(order + 'H', header, 116, interval)
        struct.pack_into(order + 'i', header, 188, 10)
        struct.pack_into(order + 'i', header, 192, 20 + n)
        parts.append(bytes(header))
        parts.append(np.asarray(trace, dtype=order + 'f4').tobytes())
    return b''.join(parts)


def _segd_bytes(traces, channel_start=1):
    """Single channel set, 2 ms base scan interval, IEEE demultiplexed."""
    from seisio.binary_codecs import write_bcd

    n_samples = traces.shape[1]
    general = bytearray(32)
    write_bcd(general, 0, 4, 1234)
    write_bcd(general, 2, 4, 8058)
    general[22] = 32  # 32 / 16 ms = 2 ms
    write_bcd(general, 25, 3, 1, high_first=False)
    write_bcd(general, 27, 2, 1)
    write_bcd(general, 28, 2, 1)

    descriptor = bytearray(32)
    struct.pack_into('>HH', descriptor, 2, 0, n_samples)  # 2 ms units
    write_bcd(descriptor, 8, 4, len(traces))

    parts = [bytes(general), bytes(descriptor)]
    for n, trace in enumerate(traces):
        header = bytearray(20)
        write_bcd(header, 4, 4, channel_start + n)
        parts.append(bytes(header))
        parts.append(np.asarray(trace, dtype='>f4').tobytes())
    return b''.join(parts)


class TestSeismicUnixCodec:
    """Tests for SeismicUnixCodec."""

    def test_little_endian_file(self):
        """Test samples, interval and line numbers of a little-endian file."""
        from seisio.binary_codecs import SeismicUnixCodec

        traces = np.random.RandomState(0).randn(4, 30).astype(np.float32)
        data = _su_bytes(traces)
        codec = SeismicUnixCodec()
        header = codec.decode(data)
        block = codec.read_traces(data, header)

        assert header.byte_order == '<'
        assert header.samples_per_trace == 30
        assert header.sample_interval_us == 4000.0
        np.testing.assert_array_equal(block.samples, traces)
        np.testing.assert_array_equal(block.crosslines, [20, 21, 22, 23])

    def test_big_endian_file(self):
        """Test byte order detection picks big-endian when it fits exactly."""
        from seisio.binary_codecs import SeismicUnixCodec

        traces = np.ones((3, 25), dtype=np.float32)
        data = _su_bytes(traces, order='>')
        header = SeismicUnixCodec().decode(data)

        assert header.byte_order == '>'
        assert header.samples == 25

    def test_round_trip(self):
        """Test the first trace header is reproduced exactly."""
        from seisio.binary_codecs import SeismicUnixCodec

        data = _su_bytes(np.zeros((2, 10), dtype=np.float32))
        codec = SeismicUnixCodec()
        assert codec.encode(codec.decode(data)) == data[:240]

    def test_short_buffer_is_malformed(self):
        """Test a buffer shorter than a trace header is rejected."""
        from seisio.binary_codecs import SeismicUnixCodec
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError):
            SeismicUnixCodec().decode(b'\x00' * 100)


class TestBcd:
    """Tests for packed BCD helpers."""

    def test_read_write(self):
        """Test high-first and low-first nibble placement."""
        from seisio.binary_codecs import read_bcd, write_bcd

        buffer = bytearray(4)
        write_bcd(buffer, 0, 4, 8058)
        assert bytes(buffer[:2]) == b'\x80\x58'
        assert read_bcd(buffer, 0, 4) == 8058

        write_bcd(buffer, 2, 3, 123, high_first=False)
        assert buffer[2] & 0x0F == 1
        assert read_bcd(buffer, 2, 3, high_first=False) == 123

    def test_overflow(self):
        """Test a value too wide for its digits is rejected."""
        from seisio.binary_codecs import write_bcd
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError):
            write_bcd(bytearray(2), 0, 2, 100)


class TestSegdCodec:
    """Tests for SegdCodec."""

    def test_decode_general_header(self):
        """Test general header fields and channel set geometry."""
        from seisio.binary_codecs import SegdCodec

        traces = np.random.RandomState(1).randn(3, 100).astype(np.float32)
        header = SegdCodec().decode(_segd_bytes(traces))

        assert header.file_number == 1234
        assert header.format_code == 8058
        assert header.sample_interval_us == 2000.0
        assert header.samples_per_trace == 100
        assert header.trace_count == 3
        assert header.header_length == 64

    def test_read_traces(self):
        """Test demultiplexed samples and channel numbers."""
        from seisio.binary_codecs import SegdCodec

        traces = np.random.RandomState(2).randn(3, 100).astype(np.float32)
        data = _segd_bytes(traces, channel_start=5)
        codec = SegdCodec()
        block = codec.read_traces(data, codec.decode(data))

        np.testing.assert_array_equal(block.samples, traces)
        np.testing.assert_array_equal(block.crosslines, [5, 6, 7])

    def test_round_trip(self):
        """Test every header block is reproduced exactly."""
        from seisio.binary_codecs import SegdCodec

        data = _segd_bytes(np.zeros((2, 50), dtype=np.float32))
        codec = SegdCodec()
        header = codec.decode(data)
        assert codec.encode(header) == data[:header.header_length]

    def test_zero_scan_interval_is_malformed(self):
        """Test a zero base scan interval is rejected."""
        from seisio.binary_codecs import SegdCodec
        from seisio.errors import MalformedHeaderError

        data = bytearray(_segd_bytes(np.zeros((1, 10), dtype=np.float32)))
        data[22] = 0
        with pytest.raises(MalformedHeaderError, match='zero base scan interval'):
            SegdCodec().decode(bytes(data))

    def test_truncated_header_blocks(self):
        """Test a buffer ending inside the channel set descriptors."""
        from seisio.binary_codecs import SegdCodec
        from seisio.errors import MalformedHeaderError

        data = _segd_bytes(np.zeros((1, 10), dtype=np.float32))
        with pytest.raises(MalformedHeaderError, match='header blocks need'):
            SegdCodec().decode(data[:40])


class TestRawBinaryCodec:
    """Tests for RawBinaryCodec."""

    def test_single_trace(self):
        """Test the whole buffer is one little-endian float32 trace."""
        from seisio.binary_codecs import RawBinaryCodec

        values = np.linspace(-1, 1, 64).astype('<f4')
        data = values.tobytes()
        codec = RawBinaryCodec()
        header = codec.decode(data)
        block = codec.read_traces(data, header, chunk_bytes=16)

        assert header.samples_per_trace == 64
        assert header.trace_count == 1
        assert codec.encode(header) == b''
        np.testing.assert_array_equal(block.samples[0], values)

    def test_default_interval_is_noted(self):
        """Test headerless input reports its assumed interval."""
        from seisio.binary_codecs import RawBinaryCodec

        header = RawBinaryCodec().decode(np.zeros(10, dtype='<f4').tobytes() + b'\x01')
        assert any('1000 us' in note for note in header.notes)
        assert any('trailing bytes' in note for note in header.notes)

    def test_too_short(self):
        """Test fewer than four bytes hold no sample."""
        from seisio.binary_codecs import RawBinaryCodec
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError):
            RawBinaryCodec().decode(b'\x00\x00')


class TestNetcdfCodecs:
    """Tests for NetCDF classic and NetCDF4 codecs."""

    def test_netcdf_classic(self, tmp_path):
        """Test the largest variable becomes the volume."""
        from scipy.io import netcdf_file
        from seisio.binary_codecs import NetcdfCodec

        path = tmp_path / "cube.nc"
        cube = np.arange(2 * 3 * 20, dtype=np.float32).reshape(2, 3, 20)
        with netcdf_file(str(path), 'w') as nc:
            nc.createDimension('inline', 2)
            nc.createDimension('crossline', 3)
            nc.createDimension('time', 20)
            nc.createVariable('time', 'f4', ('time',))[:] = np.arange(20)
            var = nc.createVariable('amplitude', 'f4', ('inline', 'crossline', 'time'))
            var[:] = cube
            var.sample_interval = 4.0

        data = path.read_bytes()
        codec = NetcdfCodec()
        header = codec.decode(data)
        block = codec.read_traces(data, header, chunk_bytes=80)

        assert header.variable == 'amplitude'
        assert header.sample_interval_us == 4000.0
        assert header.line_count == 2
        assert header.trace_count == 3
        assert header.notes == ()
        np.testing.assert_array_equal(block.samples, cube)
        assert codec.encode(header) == data[:8]

    def test_netcdf4(self, tmp_path):
        """Test an HDF5-based NetCDF4 file through h5py."""
        import h5py
        from seisio.binary_codecs import Netcdf4Codec

        path = tmp_path / "cube.nc4"
        cube = np.random.RandomState(3).randn(2, 4, 16).astype(np.float32)
        with h5py.File(path, 'w') as f:
            ds = f.create_dataset('seismic', data=cube)
            ds.attrs['sample_interval_us'] = 500.0
            ds.attrs['units'] = 'ft'

        data = path.read_bytes()
        codec = Netcdf4Codec()
        header = codec.decode(data)
        block = codec.read_traces(data, header, chunk_bytes=64)

        assert header.variable == 'seismic'
        assert header.sample_interval_us == 500.0
        assert header.units == 'ft'
        np.testing.assert_array_equal(block.samples, cube)

    def test_missing_interval_falls_back(self, tmp_path):
        """Test a container without an interval attribute uses the default."""
        import h5py
        from seisio.binary_codecs import Netcdf4Codec

        path = tmp_path / "plain.nc4"
        with h5py.File(path, 'w') as f:
            f.create_dataset('data', data=np.zeros((5, 8), dtype=np.float32))

        header = Netcdf4Codec().decode(path.read_bytes())
        assert header.sample_interval_us == 1000.0
        assert header.notes

    def test_wrong_signature(self):
        """Test non-NetCDF bytes are malformed."""
        from seisio.binary_codecs import NetcdfCodec, Netcdf4Codec
        from seisio.errors import MalformedHeaderError

        with pytest.raises(MalformedHeaderError):
            NetcdfCodec().decode(b'not a netcdf file')
        with pytest.raises(MalformedHeaderError):
            Netcdf4Codec().decode(b'not an hdf5 file')
