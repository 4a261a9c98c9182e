"""
Tests for the encoder state machine and the OVDS encoder.
"""
import json

import numpy as np
import pytest


def _encode(volume, metadata, **options):
    from seisio.encoders import OvdsEncoder, EncoderOptions

    defaults = dict(brick_size=(32, 32, 32), lod_levels=4)
    defaults.update(options)
    return OvdsEncoder(options=EncoderOptions(**defaults)).encode(volume, metadata)


class TestEncoderStateMachine:
    """Tests for FormatEncoder transitions."""

    def test_transitions_in_order(self, synthetic_volume, metadata, small_bricks):
        """Test every state is reached exactly once, in order."""
        from seisio.encoders import OvdsEncoder, EncoderState

        states = []
        encoder = OvdsEncoder(options=small_bricks, on_transition=states.append)
        encoder.encode(synthetic_volume, metadata)

        assert states == list(EncoderState)[1:]
        assert encoder.state is EncoderState.DONE

    def test_single_use(self, synthetic_volume, metadata, small_bricks):
        """Test a finished encoder refuses a second run."""
        from seisio.encoders import OvdsEncoder
        from seisio.errors import EncodingError

        encoder = OvdsEncoder(options=small_bricks)
        encoder.encode(synthetic_volume, metadata)
        with pytest.raises(EncodingError, match='single-use'):
            encoder.encode(synthetic_volume, metadata)

    def test_failure_names_transition(self, synthetic_volume, metadata, small_bricks):
        """Test an exception inside a transition becomes EncodingError with its stage."""
        from unittest.mock import patch
        from seisio.encoders import OvdsEncoder
        from seisio.errors import EncodingError

        encoder = OvdsEncoder(options=small_bricks)
        with patch('seisio.encoders.base.CompressionStage.compress', side_effect=MemoryError('boom')):
            with pytest.raises(EncodingError) as exc_info:
                encoder.encode(synthetic_volume, metadata)

        assert exc_info.value.stage == 'compressed'
        assert 'boom' in exc_info.value.message

    def test_disallowed_brick_size_fails_bricking(self, synthetic_volume, metadata):
        """Test a brick size outside the policy fails the BRICKED transition."""
        from seisio.encoders import OvdsEncoder, EncoderOptions, EncoderState
        from seisio.errors import EncodingError

        encoder = OvdsEncoder(options=EncoderOptions(brick_size=(48, 48, 48)))
        with pytest.raises(EncodingError) as exc_info:
            encoder.encode(synthetic_volume, metadata)

        assert exc_info.value.stage == 'bricked'
        assert encoder.state is EncoderState.PYRAMID_BUILT

    def test_empty_volume(self, metadata):
        """Test an empty volume is refused before any transition."""
        from seisio.encoders import OvdsEncoder, EncoderState
        from seisio.errors import EncodingError

        encoder = OvdsEncoder()
        with pytest.raises(EncodingError):
            encoder.encode(np.zeros((0, 4, 10), dtype=np.float32), metadata)
        assert encoder.state is EncoderState.INIT

    def test_cancellation_between_transitions(self, synthetic_volume, metadata, small_bricks):
        """Test cancelling after the header stops before the pyramid."""
        from seisio.encoders import OvdsEncoder, EncoderState
        from utils.cancellation import CancellationToken, CancellationError

        token = CancellationToken()

        def cancel_after_header(state):
            if state is EncoderState.HEADER_WRITTEN:
                token.cancel()

        encoder = OvdsEncoder(options=small_bricks, token=token, on_transition=cancel_after_header)
        with pytest.raises(CancellationError):
            encoder.encode(synthetic_volume, metadata)
        assert encoder.state is EncoderState.HEADER_WRITTEN

    def test_options_from_config(self):
        """Test unset configuration fields fall back to policy defaults."""
        from models.app_settings import ConversionPolicy
        from models.conversion import ConversionConfig
        from models.volume_layout import BrickCurve
        from seisio.encoders import EncoderOptions

        policy = ConversionPolicy(default_lod_levels=6, default_brick_codec='lz4', compression_workers=2)
        config = ConversionConfig('SEG-Y', 'OVDS', 'a.sgy', tolerance=0.02, brick_size=(32, 64, 128))
        options = EncoderOptions.from_config(config, policy)

        assert options.lod_levels == 6
        assert options.brick_size == (32, 64, 128)
        assert options.curve is BrickCurve.MORTON
        assert options.compression.tolerance == 0.02
        assert options.compression.brick_codec == 'lz4'
        assert options.max_workers == 2


class TestSurveyGeometry:
    """Tests for SurveyGeometry."""

    def test_from_traces(self, segy_bytes):
        """Test line numbers and the grid-to-world transform come from trace headers."""
        from seisio.encoders import SurveyGeometry
        from seisio.segy_codec import SegyHeaderCodec

        codec = SegyHeaderCodec()
        traces = codec.read_traces(segy_bytes, codec.decode(segy_bytes))
        geometry = SurveyGeometry.from_traces(traces, 3, 4, 2000.0)
        m = np.asarray(geometry.ijk_to_world).reshape(4, 4)

        assert geometry.first_inline == 100
        assert geometry.first_crossline == 200
        assert m[0, 3] == pytest.approx(500000.0)
        assert m[0, 0] == pytest.approx(25.0)
        assert m[1, 1] == pytest.approx(40.0)
        assert m[2, 2] == pytest.approx(2.0)

    def test_ranges_are_end_exclusive(self):
        """Test every range strictly increases, even for one-line volumes."""
        from seisio.encoders import SurveyGeometry

        ranges = SurveyGeometry(first_inline=5, sample_interval_ms=4.0).ranges((1, 1, 10))

        assert ranges['inlineRange'] == [5, 6]
        assert ranges['crosslineRange'] == [1, 2]
        assert ranges['sampleRange'] == [0.0, 40.0]


class TestOvdsEncoder:
    """Tests for OvdsEncoder and OvdsReader."""

    def test_header_is_single_json_line(self, synthetic_volume, metadata):
        """Test the header parses and carries every block."""
        output = _encode(synthetic_volume, metadata)
        header = json.loads(output.data[:output.data.index(b'\n')])

        assert header['format'] == 'OVDS'
        assert header['version'] == '1.0'
        assert header['createdBy'] == 'seisconvert'
        assert header['sourceFormat'] == 'SEG-Y'
        info = header['volume_info']
        assert info['dimensionality'] == 3
        assert info['brickSize'] == [32, 32, 32]
        assert info['lodLevels'] == 4
        assert info['dimensions'] == [3, 5, 80]
        assert info['margins'] == [29, 27, 16]
        assert header['compression']['algorithm'] == 'lossless'
        assert header['metadata']['samplingRateHz'] == 500.0
        assert len(header['geometry']['ijkToWorld']) == 16

    def test_cloud_hints(self, synthetic_volume, metadata):
        """Test cloud hints are emitted only for cloud-compatible output."""
        from seisio.encoders import OvdsReader

        cloud = OvdsReader(_encode(synthetic_volume, metadata).data).header['optimization']
        plain = OvdsReader(_encode(synthetic_volume, metadata, cloud_compatible=False).data).header['optimization']

        assert cloud['cloudOptimized'] is True
        assert cloud['storageClass'] == 'hot'
        assert set(plain) == {'chunkingStrategy', 'accessPattern'}

    def test_metadata_can_be_omitted(self, synthetic_volume, metadata):
        """Test preserve_metadata=False drops the metadata block."""
        from seisio.encoders import OvdsReader

        output = _encode(synthetic_volume, metadata, preserve_metadata=False)
        assert 'metadata' not in OvdsReader(output.data).header

    def test_lod_offsets_strictly_increase(self, synthetic_volume, metadata):
        """Test the LOD table points past itself in increasing order."""
        from seisio.encoders import OvdsReader

        data = _encode(synthetic_volume, metadata).data
        reader = OvdsReader(data)
        table = reader.lod_table()
        offsets = [offset for offset, _ in table]

        assert len(table) == 4
        assert offsets[0] == reader.payload_start + 16 * 4
        assert all(b > a for a, b in zip(offsets, offsets[1:]))
        assert offsets[-1] + table[-1][1] == len(data)

    def test_lossless_round_trip(self, synthetic_volume, metadata):
        """Test level 0 decodes exactly and lower levels match the pyramid."""
        from processors.pyramid_builder import PyramidBuilder
        from seisio.encoders import OvdsReader

        reader = OvdsReader(_encode(synthetic_volume, metadata).data)
        pyramid = PyramidBuilder(levels=4).build(synthetic_volume)

        for k in range(4):
            np.testing.assert_array_equal(reader.read_level(k), pyramid.levels[k])

    def test_lossy_round_trip_within_tolerance(self, synthetic_volume, metadata):
        """Test lossy output stays within tolerance x dynamic range."""
        from models.volume_layout import CompressionSpec
        from seisio.encoders import OvdsReader

        output = _encode(synthetic_volume, metadata, compression=CompressionSpec(tolerance=0.01))
        restored = OvdsReader(output.data).read_level(0)
        dynamic_range = float(synthetic_volume.max() - synthetic_volume.min())

        assert output.compression.tolerance == 0.01
        assert np.abs(restored - synthetic_volume).max() <= 0.01 * dynamic_range * (1 + 1e-4)

    def test_output_is_segmented(self, synthetic_volume, metadata):
        """Test the encoder hands back header, directories and blobs as separate segments."""
        from seisio.encoders import OvdsReader

        output = _encode(synthetic_volume, metadata)
        segments = list(output.segments)
        bricks = sum(len(OvdsReader(output.data).brick_directory(k)) for k in range(4))

        assert len(segments) == 1 + 4 + bricks
        assert output.size == sum(len(s) for s in segments)
        assert output.data == b''.join(segments)
        assert output.segments == [output.data]

    def test_nan_samples_survive_lossy(self, metadata):
        """Test NaN samples are stored exactly while finite bricks are still quantized."""
        from models.volume_layout import CompressionSpec
        from seisio.encoders import OvdsReader

        volume = np.random.RandomState(6).randn(4, 4, 64).astype(np.float32)
        volume[0, 0, 0] = np.nan
        output = _encode(volume, metadata, lod_levels=1, compression=CompressionSpec(tolerance=0.01))
        restored = OvdsReader(output.data).read_level(0)

        assert any('NaN or Inf' in w for w in output.warnings)
        assert np.isnan(restored[0, 0, 0])
        finite = np.isfinite(volume)
        assert np.isfinite(restored[finite]).all()
        bound = 0.01 * float(np.nanmax(volume) - np.nanmin(volume)) * (1 + 1e-4)
        assert np.abs(restored[:, :, 32:] - volume[:, :, 32:]).max() <= bound
        np.testing.assert_array_equal(restored[:, :, :32], volume[:, :, :32])

    def test_brick_directory_follows_curve(self, metadata):
        """Test the directory lists bricks in Morton order."""
        from seisio.encoders import OvdsReader

        volume = np.zeros((64, 64, 64), dtype=np.float32)
        reader = OvdsReader(_encode(volume, metadata, lod_levels=1).data)
        indices = [entry[:3] for entry in reader.brick_directory(0)]

        assert indices[:4] == [(0, 0, 0), (1, 0, 0), (0, 1, 0), (1, 1, 0)]

    def test_truncated_pyramid_warns(self, metadata):
        """Test requesting more levels than the samples allow is a warning."""
        volume = np.ones((2, 2, 8), dtype=np.float32)
        output = _encode(volume, metadata, lod_levels=6)

        assert output.lod_levels == 3
        assert any('truncated' in w for w in output.warnings)

    def test_reader_rejects_other_formats(self):
        """Test the reader needs an OVDS header."""
        from seisio.encoders import OvdsReader

        with pytest.raises(ValueError):
            OvdsReader(b'{"format":"ZGY"}\n')
        with pytest.raises(ValueError):
            OvdsReader(b'no delimiter')
