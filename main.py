#!/usr/bin/env python3
"""
Seismic Conversion Tool - Main Entry Point

Converts legacy seismic files (SEG-Y, SEG-D, Seismic Unix, LAS, NetCDF,
ASCII variants, raw binary) to cloud formats (OVDS, HDF5, ZGY) and
validates OVDS output against the cloud ingestion contract.

Usage:
    python main.py convert survey.sgy -s SEG-Y -t OVDS
    python main.py validate survey.ovds
    python main.py formats
"""
import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from models.app_settings import get_settings
from models.conversion import ConversionConfig
from models.formats import SourceFormat, TargetFormat
from models.volume_layout import BrickCurve
from seisio.converter import SeismicConverter
from seisio.format_registry import get_format_registry
from seisio.structural_validator import StructuralValidator
from utils.cancellation import CancellationToken, CancellationReason
from utils.storage_manager import LocalDestination, CloudDestination, BothDestination

# Set up logging
logger = logging.getLogger(__name__)


def _print_progress(percent: int, message: str):
    print(f"\r[{percent:3d}%] {message:<50}", end='', flush=True)
    if percent >= 100:
        print()


def _destination(args, config: ConversionConfig):
    local = None
    if not args.no_local:
        output = Path(args.output) if args.output else get_settings().get_effective_output_directory()
        if output.is_dir() or not output.suffix:
            output = output / config.output_name
        local = LocalDestination(output)

    cloud = None
    if args.account:
        cloud = CloudDestination(
            account=args.account,
            container=args.container,
            blob_name=args.blob or config.output_name,
            auth_token=args.sas_token or '',
        )

    if local and cloud:
        return BothDestination(local, cloud)
    return local or cloud


def cmd_convert(args) -> int:
    source = Path(args.input)
    try:
        data = source.read_bytes()
    except OSError as e:
        logger.error(f"Cannot read {source}: {e}")
        return 2

    config = ConversionConfig(
        source_format=SourceFormat.from_label(args.source),
        target_format=TargetFormat.from_label(args.target),
        file_name=source.name,
        compression_level=args.compression_level,
        chunk_size=args.chunk_size,
        preserve_metadata=not args.no_metadata,
        cloud_compatible=not args.no_cloud,
        tolerance=args.tolerance,
        brick_size=tuple(args.brick_size) if args.brick_size else None,
        lod_levels=args.lod_levels,
        brick_curve=BrickCurve(args.curve) if args.curve else None,
    )

    token = CancellationToken(timeout=args.timeout)
    previous_handler = signal.signal(
        signal.SIGINT, lambda *_: token.cancel(CancellationReason.USER_REQUESTED, "Interrupted"))

    converter = SeismicConverter(policy=get_settings().get_policy())
    try:
        result = converter.convert(
            data, config,
            progress_callback=None if args.quiet else _print_progress,
            cancellation_token=token,
            destination=_destination(args, config),
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if not args.quiet:
        print()
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    if not result.success:
        print(f"FAILED: {result.error}")
        return 130 if result.cancelled else 1

    if result.storage_result is not None:
        stored = result.storage_result
        if stored.local_path:
            print(f"Saved: {stored.local_path}")
        if stored.cloud_url:
            print(f"Uploaded: {stored.cloud_url}")
    if result.compatibility_report is not None:
        report = result.compatibility_report
        print(f"Structurally valid: {report.is_structurally_valid}, "
              f"cloud compatible: {report.cloud_compatible}")
        for line in report.recommendations:
            print(f"  - {line}")
    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0


def cmd_validate(args) -> int:
    path = Path(args.input)
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.error(f"Cannot read {path}: {e}")
        return 2

    report = StructuralValidator(get_settings().get_policy()).validate(data, args.original_size)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(f"Structurally valid: {report.is_structurally_valid}")
        print(f"Cloud compatible:   {report.cloud_compatible}")
        for step, ok in report.step_results.items():
            print(f"  {'PASS' if ok else 'FAIL'}  {step.value}")
        for warning in report.warnings:
            print(f"WARNING: {warning}")
        for line in report.recommendations:
            print(f"  - {line}")
    return 0 if report.is_structurally_valid else 1


def cmd_formats(args) -> int:
    registry = get_format_registry()
    print("Source formats:")
    for fmt in SourceFormat:
        print(f"  {fmt.label:<20} {'decodable' if registry.is_supported(fmt) else 'recognised only'}")
    print("Target formats:")
    for fmt in TargetFormat:
        print(f"  {fmt.label:<20} {fmt.file_extension}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Convert legacy seismic files to cloud formats',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py convert line1.sgy -s SEG-Y -t OVDS            # Lossless OVDS
  python main.py convert line1.sgy -s SEG-Y -t OVDS --tolerance 0.01
  python main.py convert well.las -s LAS -t HDF5 -o out/
  python main.py validate out/line1.ovds --json
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    convert = sub.add_parser('convert', help='Convert a file')
    convert.add_argument('input', help='Source file')
    convert.add_argument('-s', '--source', required=True, help='Source format label, e.g. SEG-Y')
    convert.add_argument('-t', '--target', default='OVDS', help='Target format (default: OVDS)')
    convert.add_argument('-o', '--output', default=None,
                         help='Output file or directory (default: settings output directory)')
    convert.add_argument('--no-local', action='store_true', help='Do not write a local file')
    convert.add_argument('--tolerance', type=float, default=0.0,
                         help='Lossy tolerance as a fraction of dynamic range (default: 0, lossless)')
    convert.add_argument('--compression-level', type=int, default=None, help='Entropy coder level 0-9')
    convert.add_argument('--brick-size', type=int, nargs=3, default=None, metavar=('BI', 'BJ', 'BK'))
    convert.add_argument('--lod-levels', type=int, default=None, help='Requested LOD levels')
    convert.add_argument('--curve', choices=[c.value for c in BrickCurve], default=None)
    convert.add_argument('--chunk-size', type=int, default=None, help='Bytes per read/write chunk')
    convert.add_argument('--no-metadata', action='store_true', help='Do not embed metadata')
    convert.add_argument('--no-cloud', action='store_true', help='Omit cloud optimization hints')
    convert.add_argument('--timeout', type=float, default=None, help='Abort after this many seconds')
    convert.add_argument('--account', default=None, help='Cloud storage account')
    convert.add_argument('--container', default='seismic-data', help='Cloud container')
    convert.add_argument('--blob', default=None, help='Blob name (default: output file name)')
    convert.add_argument('--sas-token', default=None, help='SAS token for the container')
    convert.add_argument('-q', '--quiet', action='store_true', help='No progress output')
    convert.add_argument('--json', action='store_true', help='Print the result summary as JSON')
    convert.set_defaults(func=cmd_convert)

    validate = sub.add_parser('validate', help='Validate an OVDS file')
    validate.add_argument('input', help='OVDS file')
    validate.add_argument('--original-size', type=int, default=None, help='Size of the source file')
    validate.add_argument('--json', action='store_true', help='Print the report as JSON')
    validate.set_defaults(func=cmd_validate)

    formats = sub.add_parser('formats', help='List supported formats')
    formats.set_defaults(func=cmd_formats)
    return parser


def main(argv=None) -> int:
    """Main entry point for the command line tool."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
