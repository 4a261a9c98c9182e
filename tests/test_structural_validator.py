"""
Tests for the OVDS structural validator.
"""
import json
import struct

import numpy as np
import pytest


@pytest.fixture
def cloud_volume():
    """Volume large enough for 64^3 bricks to be meaningful."""
    np.random.seed(3)
    return np.random.randn(16, 16, 128).astype(np.float32)


def _ovds(volume, metadata, **options):
    from seisio.encoders import OvdsEncoder, EncoderOptions

    defaults = dict(brick_size=(64, 64, 64), lod_levels=4)
    defaults.update(options)
    return OvdsEncoder(options=EncoderOptions(**defaults)).encode(volume, metadata).data


def _rewrite_header(data, **changes):
    end = data.index(b'\n')
    header = json.loads(data[:end])
    for key, value in changes.items():
        section, _, name = key.partition('__')
        if name:
            header[section][name] = value
        elif value is None:
            header.pop(section)
        else:
            header[section] = value
    # Keep the header length so LOD offsets stay valid
    text = json.dumps(header, separators=(',', ':')).encode('utf-8')
    return text.ljust(end) + data[end:]


class TestStructuralValidator:
    """Tests for StructuralValidator.validate."""

    def test_cloud_compatible_output(self, cloud_volume, metadata):
        """Test a 64^3 lossy output at tolerance 0.01 is certified."""
        from models.volume_layout import CompressionSpec
        from seisio.structural_validator import StructuralValidator, SUCCESS_LINE

        data = _ovds(cloud_volume, metadata, compression=CompressionSpec(tolerance=0.01))
        report = StructuralValidator().validate(data, original_size=cloud_volume.nbytes)

        assert report.is_structurally_valid
        assert report.cloud_compatible
        assert report.optimization_score == 1.0
        assert report.recommendations[0] == SUCCESS_LINE
        assert all(report.step_results.values())

    def test_decreasing_lod_offsets(self, cloud_volume, metadata):
        """Test a corrupted LOD table makes the buffer structurally invalid."""
        from models.compatibility_report import ValidationStep
        from seisio.encoders import OvdsReader
        from seisio.structural_validator import StructuralValidator

        data = bytearray(_ovds(cloud_volume, metadata))
        start = OvdsReader(bytes(data)).payload_start
        for n, offset in enumerate([100, 50, 25, 10]):
            struct.pack_into('<Q', data, start + 16 * n, offset)

        report = StructuralValidator().validate(bytes(data))

        assert not report.is_structurally_valid
        assert not report.cloud_compatible
        assert not report.step_results[ValidationStep.LOD_STRUCTURE]
        assert any('LOD offsets must be strictly increasing' in w for w in report.warnings)

    @pytest.mark.parametrize('shift', [1, -8, 8])
    def test_shifted_middle_lod_offset(self, cloud_volume, metadata, shift):
        """Test a level block that no longer abuts its neighbours is structurally invalid."""
        from models.compatibility_report import ValidationStep
        from seisio.encoders import OvdsReader
        from seisio.structural_validator import StructuralValidator

        data = bytearray(_ovds(cloud_volume, metadata))
        reader = OvdsReader(bytes(data))
        offset, _ = reader.lod_table()[1]
        struct.pack_into('<Q', data, reader.payload_start + 16, offset + shift)

        report = StructuralValidator().validate(bytes(data))

        assert not report.is_structurally_valid
        assert not report.cloud_compatible
        assert not report.step_results[ValidationStep.LOD_STRUCTURE]
        assert any('not contiguous' in w for w in report.warnings)

    def test_trailing_bytes(self, cloud_volume, metadata):
        """Test bytes after the last level block are rejected."""
        from seisio.structural_validator import StructuralValidator

        report = StructuralValidator().validate(_ovds(cloud_volume, metadata) + b'\x00' * 16)

        assert not report.is_structurally_valid
        assert any('LOD blocks end at' in w for w in report.warnings)

    def test_without_cloud_hints(self, cloud_volume, metadata):
        """Test the two base hints alone do not clear the threshold."""
        from seisio.structural_validator import StructuralValidator

        data = _ovds(cloud_volume, metadata, cloud_compatible=False)
        report = StructuralValidator().validate(data)

        assert report.is_structurally_valid
        assert report.optimization_score == pytest.approx(0.4)
        assert not report.cloud_compatible
        assert any('storageClass' in r for r in report.recommendations)

    def test_garbage_never_raises(self):
        """Test arbitrary bytes produce an invalid report."""
        from seisio.structural_validator import StructuralValidator

        validator = StructuralValidator()
        for data in (b'', b'\x00' * 64, b'not json\n', b'[1, 2]\n', b'{"format": "OVDS"}\n',
                     np.random.RandomState(0).bytes(512)):
            report = validator.validate(data)
            assert not report.is_structurally_valid
            assert not report.cloud_compatible

    def test_idempotent(self, cloud_volume, metadata):
        """Test two validations of the same bytes agree."""
        from seisio.structural_validator import StructuralValidator

        data = _ovds(cloud_volume, metadata)
        validator = StructuralValidator()
        assert validator.validate(data).to_dict() == validator.validate(data).to_dict()

    def test_wrong_format_field(self, cloud_volume, metadata):
        """Test a foreign format id fails the header step."""
        from models.compatibility_report import ValidationStep
        from seisio.structural_validator import StructuralValidator

        data = _rewrite_header(_ovds(cloud_volume, metadata), format='VDS')
        report = StructuralValidator().validate(data)

        assert not report.step_results[ValidationStep.HEADER_STRUCTURE]
        assert any('format' in w for w in report.warnings)

    def test_geometry_range_must_increase(self, cloud_volume, metadata):
        """Test a reversed range fails geometry."""
        from models.compatibility_report import ValidationStep
        from seisio.structural_validator import StructuralValidator

        data = _rewrite_header(_ovds(cloud_volume, metadata), geometry__inlineRange=[10, 1])
        report = StructuralValidator().validate(data)

        assert not report.step_results[ValidationStep.GEOMETRY]
        assert any('inlineRange' in w for w in report.warnings)

    def test_tolerance_ceiling_is_a_warning(self, cloud_volume, metadata):
        """Test a high tolerance warns without invalidating the buffer."""
        from models.volume_layout import CompressionSpec
        from seisio.structural_validator import StructuralValidator

        data = _ovds(cloud_volume, metadata, compression=CompressionSpec(tolerance=0.1))
        report = StructuralValidator().validate(data)

        assert report.is_structurally_valid
        assert any('ceiling' in w for w in report.warnings)

    def test_disallowed_brick_size(self, cloud_volume, metadata):
        """Test brick sizes outside the policy fail volume info."""
        from models.app_settings import ConversionPolicy
        from models.compatibility_report import ValidationStep
        from seisio.structural_validator import StructuralValidator

        data = _ovds(cloud_volume, metadata)
        report = StructuralValidator(ConversionPolicy(allowed_brick_sizes=frozenset({32}))).validate(data)

        assert not report.step_results[ValidationStep.VOLUME_INFO]
        assert not report.is_structurally_valid

    def test_small_bricks_only_lower_score(self, metadata):
        """Test bricks below the sample bound fail brick layout only."""
        from models.app_settings import ConversionPolicy
        from models.compatibility_report import ValidationStep
        from seisio.encoders import OvdsEncoder, EncoderOptions
        from seisio.structural_validator import StructuralValidator

        policy = ConversionPolicy(allowed_brick_sizes=frozenset({8, 32}))
        data = OvdsEncoder(options=EncoderOptions(brick_size=(8, 8, 8), lod_levels=2),
                           policy=policy).encode(np.ones((8, 8, 16), dtype=np.float32), metadata).data
        report = StructuralValidator(policy).validate(data)

        assert report.is_structurally_valid
        assert not report.step_results[ValidationStep.BRICK_LAYOUT]
        assert any('overhead' in w for w in report.warnings)

    def test_validate_ovds_helper(self, cloud_volume, metadata):
        """Test the module-level helper matches the class."""
        from seisio.structural_validator import validate_ovds, StructuralValidator

        data = _ovds(cloud_volume, metadata)
        assert validate_ovds(data).to_dict() == StructuralValidator().validate(data).to_dict()
