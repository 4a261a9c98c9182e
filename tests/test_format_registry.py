"""
Tests for the format registry and format labels.
"""
import pytest


class TestFormatLabels:
    """Tests for SourceFormat and TargetFormat."""

    def test_label_round_trip(self):
        """Test every label maps back to its member."""
        from models.formats import SourceFormat, TargetFormat

        for fmt in SourceFormat:
            assert SourceFormat.from_label(fmt.label) is fmt
        for fmt in TargetFormat:
            assert TargetFormat.from_label(fmt.label) is fmt

    def test_unknown_label(self):
        """Test unknown labels are refused."""
        from models.formats import SourceFormat

        with pytest.raises(ValueError):
            SourceFormat.from_label('SEG-Z')

    def test_output_name(self):
        """Test the output name swaps the extension."""
        from models.conversion import ConversionConfig

        assert ConversionConfig('SEG-Y', 'OVDS', 'line1.sgy').output_name == 'line1.ovds'
        assert ConversionConfig('LAS', 'HDF5', 'well').output_name == 'well.h5'


class TestFormatRegistry:
    """Tests for FormatRegistry."""

    def test_every_format_has_an_entry(self):
        """Test the default registry covers both enums."""
        from models.formats import SourceFormat, TargetFormat
        from seisio.format_registry import get_format_registry

        registry = get_format_registry()
        assert set(registry.codecs) == set(SourceFormat)
        assert set(registry.encoders) == set(TargetFormat)

    def test_missing_entry_fails_construction(self):
        """Test a registry without a handler for some format cannot be built."""
        from models.formats import TargetFormat
        from seisio.encoders import OvdsEncoder
        from seisio.format_registry import FormatRegistry

        with pytest.raises(ValueError, match='no entry'):
            FormatRegistry({}, {TargetFormat.OVDS: OvdsEncoder})

    def test_supported_sources(self):
        """Test recognised-only formats are not decodable."""
        from models.formats import SourceFormat
        from seisio.format_registry import get_format_registry

        registry = get_format_registry()
        assert registry.is_supported(SourceFormat.SEGY)
        assert registry.is_supported(SourceFormat.LAS)
        assert not registry.is_supported(SourceFormat.DLIS)
        assert SourceFormat.PETREL_ZGY not in registry.supported_sources()

    def test_registry_is_read_only(self):
        """Test the dispatch tables cannot be modified."""
        from models.formats import SourceFormat
        from seisio.format_registry import get_format_registry

        with pytest.raises(TypeError):
            get_format_registry().codecs[SourceFormat.DLIS] = object()


class TestMain:
    """Tests for the command line entry point."""

    def test_formats_command(self, capsys):
        """Test the formats listing."""
        from main import main

        assert main(['formats']) == 0
        out = capsys.readouterr().out
        assert 'SEG-Y' in out
        assert 'recognised only' in out
        assert '.ovds' in out

    def test_validate_command(self, settings, tmp_path, capsys, synthetic_volume, metadata, small_bricks):
        """Test validate exits 0 for a valid OVDS file."""
        from main import main
        from seisio.encoders import OvdsEncoder

        path = tmp_path / 'volume.ovds'
        path.write_bytes(OvdsEncoder(options=small_bricks).encode(synthetic_volume, metadata).data)

        assert main(['validate', str(path)]) == 0
        assert 'Structurally valid: True' in capsys.readouterr().out

    def test_convert_command(self, settings, tmp_path, segy_bytes, capsys):
        """Test convert writes the output file."""
        from main import main

        source = tmp_path / 'line1.sgy'
        source.write_bytes(segy_bytes)
        out_dir = tmp_path / 'out'
        out_dir.mkdir()

        assert main(['convert', str(source), '-s', 'SEG-Y', '-o', str(out_dir), '-q']) == 0
        assert (out_dir / 'line1.ovds').exists()
