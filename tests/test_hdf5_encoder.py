"""
Tests for the HDF5 encoder.
"""
import io
import json

import numpy as np
import pytest


def _open(data):
    import h5py
    return h5py.File(io.BytesIO(data), 'r')


class TestScaleOffsetDigits:
    """Tests for the scale-offset digit rule."""

    def test_digits_honour_bound(self):
        """Test half a unit in the last kept digit stays within the bound."""
        from seisio.encoders.hdf5 import scaleoffset_digits

        for tolerance, dynamic_range in [(0.01, 1.0), (0.05, 10.0), (0.001, 2.5), (0.2, 0.01)]:
            digits = scaleoffset_digits(tolerance, dynamic_range)
            assert 0.5 * 10 ** -digits <= tolerance * dynamic_range

    def test_known_values(self):
        """Test a couple of hand-computed digit counts."""
        from seisio.encoders.hdf5 import scaleoffset_digits

        assert scaleoffset_digits(0.01, 1.0) == 2
        assert scaleoffset_digits(0.05, 10.0) == 0

    def test_zero_bound_rejected(self):
        """Test lossless requests never reach the scale-offset filter."""
        from seisio.encoders.hdf5 import scaleoffset_digits, filter_kwargs
        from models.volume_layout import CompressionSpec

        with pytest.raises(ValueError):
            scaleoffset_digits(0.0, 1.0)
        assert 'scaleoffset' not in filter_kwargs(CompressionSpec(), 1.0)
        assert 'scaleoffset' not in filter_kwargs(CompressionSpec(tolerance=0.01), 0.0)


class TestHdf5Encoder:
    """Tests for Hdf5Encoder."""

    def test_layout(self, synthetic_volume, metadata, small_bricks):
        """Test one dataset per level with brick-shaped chunks."""
        from seisio.encoders import Hdf5Encoder

        output = Hdf5Encoder(options=small_bricks).encode(synthetic_volume, metadata)

        with _open(output.data) as f:
            assert sorted(f['lod'].keys()) == ['0', '1', '2', '3']
            assert f['lod/0'].shape == (3, 5, 80)
            assert f['lod/3'].shape == (3, 5, 10)
            assert f['lod/0'].chunks == (3, 5, 32)
            assert f['lod/0'].compression == 'gzip'
            assert list(f['lod/0'].attrs['margins']) == [29, 27, 16]
            np.testing.assert_array_equal(f['lod/0'][...], synthetic_volume)

    def test_attributes(self, synthetic_volume, metadata, small_bricks):
        """Test provenance and geometry land in root attributes."""
        from seisio.encoders import Hdf5Encoder

        output = Hdf5Encoder(options=small_bricks).encode(synthetic_volume, metadata)

        with _open(output.data) as f:
            attrs = f.attrs
            assert attrs['format'] == 'HDF5'
            assert attrs['createdBy'] == 'seisconvert'
            assert attrs['lodLevels'] == 4
            assert list(attrs['brickSize']) == [32, 32, 32]
            assert list(attrs['sampleRange']) == [0.0, 160.0]
            assert attrs['ijkToWorld'].shape == (4, 4)
            assert attrs['compression_algorithm'] == 'lossless'
            assert attrs['compression_compressedSize'] == output.compression.compressed_size

    def test_metadata_group(self, synthetic_volume, metadata, small_bricks):
        """Test the metadata group and processing history."""
        from seisio.encoders import Hdf5Encoder

        output = Hdf5Encoder(options=small_bricks).encode(synthetic_volume, metadata)

        with _open(output.data) as f:
            group = f['metadata']
            assert group.attrs['samplingRateHz'] == 500.0
            assert group.attrs['lines'] == 3
            assert json.loads(group.attrs['json'])['format'] == 'SEG-Y'
            history = list(f['processing_history'].asstr()[...])
            assert history == ['Decoded SEG-Y headers']

    def test_without_metadata(self, synthetic_volume, metadata):
        """Test preserve_metadata=False writes neither metadata nor history."""
        from seisio.encoders import Hdf5Encoder, EncoderOptions

        options = EncoderOptions(brick_size=(32, 32, 32), lod_levels=2, preserve_metadata=False)
        output = Hdf5Encoder(options=options).encode(synthetic_volume, metadata)

        with _open(output.data) as f:
            assert 'metadata' not in f
            assert 'processing_history' not in f

    def test_lossy_within_tolerance(self, synthetic_volume, metadata):
        """Test the scale-offset filter respects tolerance x dynamic range."""
        from models.volume_layout import CompressionSpec
        from seisio.encoders import Hdf5Encoder, EncoderOptions

        options = EncoderOptions(brick_size=(32, 32, 32), lod_levels=2,
                                 compression=CompressionSpec(tolerance=0.01))
        output = Hdf5Encoder(options=options).encode(synthetic_volume, metadata)
        dynamic_range = float(synthetic_volume.max() - synthetic_volume.min())

        with _open(output.data) as f:
            assert f['lod/0'].scaleoffset is not None
            restored = f['lod/0'][...]
        assert np.abs(restored - synthetic_volume).max() <= 0.01 * dynamic_range
        assert output.compression.tolerance == 0.01

    def test_nan_falls_back_to_lossless(self, synthetic_volume, metadata):
        """Test a volume with NaN samples skips the scale-offset filter and keeps them."""
        from models.volume_layout import CompressionAlgorithm, CompressionSpec
        from seisio.encoders import Hdf5Encoder, EncoderOptions

        volume = synthetic_volume.copy()
        volume[1, 2, 3] = np.nan
        options = EncoderOptions(brick_size=(32, 32, 32), lod_levels=2,
                                 compression=CompressionSpec(tolerance=0.01))
        output = Hdf5Encoder(options=options).encode(volume, metadata)

        assert any('NaN or Inf' in w for w in output.warnings)
        assert output.compression.algorithm is CompressionAlgorithm.LOSSLESS
        with _open(output.data) as f:
            assert f['lod/0'].scaleoffset is None
            assert f.attrs['compression_algorithm'] == 'lossless'
            np.testing.assert_array_equal(f['lod/0'][...], volume)

    def test_transitions(self, synthetic_volume, metadata, small_bricks):
        """Test HDF5 runs the same state machine."""
        from seisio.encoders import Hdf5Encoder, EncoderState

        states = []
        Hdf5Encoder(options=small_bricks, on_transition=states.append).encode(synthetic_volume, metadata)
        assert states[-1] is EncoderState.DONE
        assert len(states) == 6
