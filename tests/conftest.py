"""
Pytest configuration and fixtures for seisconvert tests.
"""
import struct
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))


def build_segy_bytes(traces, sample_interval=2000, inlines=None, crosslines=None,
                     cdp_x=None, cdp_y=None, scalar=0, format_code=5, trailing=b''):
    """
    Assemble a SEG-Y buffer in memory.

    traces is (n_traces, n_samples); only IEEE (5) and int32 (2) samples
    are written here.
    """
    from seisio.segy_codec import SegyHeader, SegyHeaderCodec

    traces = np.asarray(traces)
    n_traces, n_samples = traces.shape
    header = SegyHeader.create(samples=n_samples, sample_interval=sample_interval,
                               format_code=format_code)
    parts = [SegyHeaderCodec().encode(header)]
    sample_dtype = '>f4' if format_code == 5 else '>i4'

    for n in range(n_traces):
        trace_header = bytearray(240)
        struct.pack_into('>h', trace_header, 70, scalar)
        if cdp_x is not None:
            struct.pack_into('>i', trace_header, 180, int(cdp_x[n]))
            struct.pack_into('>i', trace_header, 184, int(cdp_y[n]))
        if inlines is not None:
            struct.pack_into('>i', trace_header, 188, int(inlines[n]))
            struct.pack_into('>i', trace_header, 192, int(crosslines[n]))
        struct.pack_into('>H', trace_header, 114, n_samples)
        struct.pack_into('>H', trace_header, 116, sample_interval)
        parts.append(bytes(trace_header))
        parts.append(np.asarray(traces[n], dtype=sample_dtype).tobytes())
    return b''.join(parts) + trailing


@pytest.fixture
def segy_factory():
    """Callable building SEG-Y bytes from a trace array."""
    return build_segy_bytes


@pytest.fixture
def grid_traces():
    """3 inlines x 4 crosslines x 50 samples of smooth synthetic data."""
    np.random.seed(42)
    lines, per_line, n_samples = 3, 4, 50
    t = np.linspace(0.0, 1.0, n_samples)
    traces = np.zeros((lines * per_line, n_samples), dtype=np.float32)
    for n in range(lines * per_line):
        traces[n] = np.sin(2 * np.pi * (5 + n) * t) + 0.05 * np.random.randn(n_samples)
    inlines = np.repeat(np.arange(100, 100 + lines), per_line)
    crosslines = np.tile(np.arange(200, 200 + per_line), lines)
    return traces, inlines, crosslines


@pytest.fixture
def segy_bytes(segy_factory, grid_traces):
    """Gridded SEG-Y survey with coordinates scaled by 1/10."""
    traces, inlines, crosslines = grid_traces
    cdp_x = 5000000 + (inlines - 100) * 250 + (crosslines - 200) * 125
    cdp_y = 7000000 + (inlines - 100) * 100 + (crosslines - 200) * 400
    return segy_factory(traces, sample_interval=2000, inlines=inlines, crosslines=crosslines,
                        cdp_x=cdp_x, cdp_y=cdp_y, scalar=-10)


@pytest.fixture
def segyio_file(tmp_path, grid_traces):
    """The same survey written by segyio in IBM float."""
    import segyio

    traces, inlines, crosslines = grid_traces
    n_traces, n_samples = traces.shape
    path = tmp_path / "survey.sgy"

    spec = segyio.spec()
    spec.format = 1  # IBM float
    spec.samples = range(n_samples)
    spec.tracecount = n_traces

    with segyio.create(str(path), spec) as f:
        for i in range(n_traces):
            f.trace[i] = traces[i]
            f.header[i] = {
                segyio.TraceField.INLINE_3D: int(inlines[i]),
                segyio.TraceField.CROSSLINE_3D: int(crosslines[i]),
            }
        f.bin.update({segyio.BinField.Interval: 2000, segyio.BinField.Samples: n_samples})

    return path


@pytest.fixture
def synthetic_volume():
    """Small (lines, traces, samples) float32 volume."""
    np.random.seed(7)
    t = np.linspace(0.0, 1.0, 80)
    base = np.sin(2 * np.pi * 12 * t).astype(np.float32)
    volume = np.empty((3, 5, 80), dtype=np.float32)
    for i in range(3):
        for j in range(5):
            volume[i, j] = base * (1 + 0.1 * i) + 0.01 * j + 0.02 * np.random.randn(80)
    return volume


@pytest.fixture
def metadata():
    """SEG-Y derived metadata for a 3 x 5 x 80 volume at 2 ms."""
    from models.formats import SourceFormat
    from models.seismic_metadata import SeismicMetadata, Dimensions

    return SeismicMetadata(
        format=SourceFormat.SEGY,
        dimensions=Dimensions(samples=80, traces=5, lines=3),
        sampling_rate_hz=500.0,
        units='m',
        coordinate_system='unknown',
        acquisition_parameters={'job_id': 1},
        processing_history=['Decoded SEG-Y headers'],
    )


@pytest.fixture
def small_bricks():
    """Encoder options using the smallest allowed bricks."""
    from seisio.encoders import EncoderOptions

    return EncoderOptions(brick_size=(32, 32, 32), lod_levels=4)


@pytest.fixture
def policy():
    """Default conversion policy."""
    from models.app_settings import ConversionPolicy
    return ConversionPolicy()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Fresh AppSettings instance backed by a temporary settings file."""
    from models.app_settings import AppSettings

    monkeypatch.setattr(AppSettings, 'SETTINGS_DIR', tmp_path / 'config')
    monkeypatch.setattr(AppSettings, 'SETTINGS_FILE', tmp_path / 'config' / 'settings.json')
    monkeypatch.setattr(AppSettings, '_instance', None)
    return AppSettings()
