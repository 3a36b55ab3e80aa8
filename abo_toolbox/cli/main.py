"""
Command-line interface for the Allen Brain Observatory toolbox.

Provides CLI commands for working with the dataset manifests:
- manifest: Build a manifest table and print or export it
- update: Purge cached manifest queries and rebuild them
- cache: Download session data files into the local cache
- summary: Cross-tabulate a (filtered) manifest table
"""

import argparse
import logging
import sys

from .. import __version__
from ..config import ToolboxConfig
from ..core.cache import RemoteContentCache
from ..core.filtering import EntityFilterSet
from ..exceptions import BulkFetchError
from ..pipeline.manifest import ManifestStore
from ..pipeline.validation import summarize_manifest
from ..utils.logging import setup_logging


def build_store(args) -> ManifestStore:
    """Create a manifest store from the common command-line options."""
    config = ToolboxConfig(cache_dir=args.cache_dir, show_progress=not args.quiet)
    return ManifestStore(args.kind, cache=RemoteContentCache(config=config), config=config)


def parse_filters(filters) -> list:
    """
    Parse 'kind=value' filter arguments.

    Example:
        >>> parse_filters(['session_type=brain_observatory_1.1', 'structure=VISp'])
        [('session_type', 'brain_observatory_1.1'), ('structure', 'VISp')]
    """
    parsed = []
    for item in filters or []:
        if '=' not in item:
            raise ValueError(f"Filters must look like kind=value, got '{item}'")
        kind, value = item.split('=', 1)
        parsed.append((kind.strip(), value.strip()))
    return parsed


def _report_error(args, e: Exception) -> int:
    print(f"Error: {e}", file=sys.stderr)
    if args.verbose:
        import traceback
        traceback.print_exc()
    return 1


def cmd_manifest(args):
    """Handle 'manifest' command."""
    try:
        store = build_store(args)
        table = store.table(args.table)

        print(f"{args.kind} {args.table}: {len(table)} rows, {len(table.columns)} columns")
        if args.output:
            table.to_csv(args.output, index=False)
            print(f"Saved to: {args.output}")
        else:
            print(table.head(args.head).to_string())
        return 0

    except Exception as e:
        return _report_error(args, e)


def cmd_update(args):
    """Handle 'update' command."""
    try:
        store = build_store(args)
        print(f"Updating {args.kind} manifests")
        tables = store.update_manifests()
        for line in summarize_manifest(tables):
            print(f"  - {line}")
        return 0

    except Exception as e:
        return _report_error(args, e)


def cmd_cache(args):
    """Handle 'cache' command."""
    try:
        store = build_store(args)
        print(f"Caching data files for {len(args.session_ids)} {args.kind} sessions")
        paths = store.cache_files_for_session_ids(
            args.session_ids,
            use_parallel=not args.serial,
            max_retries=args.max_retries,
            max_workers=args.max_workers
        )
        for path in paths:
            print(f"  - {path}")
        return 0

    except BulkFetchError as e:
        print(f"Error: {len(e.failed)} file(s) failed after retries:", file=sys.stderr)
        for key, cause in sorted(e.failed.items()):
            print(f"  - {key}: {cause}", file=sys.stderr)
        return 1
    except Exception as e:
        return _report_error(args, e)


def cmd_summary(args):
    """Handle 'summary' command."""
    try:
        store = build_store(args)
        filter_set = EntityFilterSet.from_manifest(store, args.table)
        for kind, value in parse_filters(args.filter):
            filter_set.filter_by(kind, value)

        summary = filter_set.summary_by(args.rows, columns=args.columns, unique_by=args.unique_by)
        print(summary.to_string())
        return 0

    except Exception as e:
        return _report_error(args, e)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog='abo-toolbox',
        description='Allen Brain Observatory toolbox - Query, cache and summarize dataset manifests',
        epilog='For detailed help on a command: abo-toolbox <command> --help'
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    def add_common(command_parser):
        command_parser.add_argument('kind', choices=['ophys', 'ecephys'], help='Dataset modality')
        command_parser.add_argument('--cache-dir', help='Cache root directory (default: ~/.cache/abo_toolbox)')
        command_parser.add_argument('--quiet', '-q', action='store_true', help='Do not print download progress')
        command_parser.add_argument('--verbose', '-v', action='store_true', help='Print debug logs and tracebacks on error')

    # ========== MANIFEST COMMAND ==========
    manifest_parser = subparsers.add_parser(
        'manifest',
        help='Build a manifest table',
        description='Build (or load from cache) one manifest table and print or export it'
    )
    add_common(manifest_parser)
    manifest_parser.add_argument('--table', default='sessions', help='Table name (default: sessions)')
    manifest_parser.add_argument('--output', '-o', help='Write the table to this CSV file')
    manifest_parser.add_argument('--head', type=int, default=10, help='Rows to print (default: 10)')
    manifest_parser.set_defaults(func=cmd_manifest)

    # ========== UPDATE COMMAND ==========
    update_parser = subparsers.add_parser(
        'update',
        help='Refresh manifests from the remote service',
        description='Purge cached manifest queries and rebuild every table'
    )
    add_common(update_parser)
    update_parser.set_defaults(func=cmd_update)

    # ========== CACHE COMMAND ==========
    cache_parser = subparsers.add_parser(
        'cache',
        help='Download session data files',
        description='Download the data files of the given sessions into the local cache'
    )
    add_common(cache_parser)
    cache_parser.add_argument('session_ids', nargs='+', type=int, help='Session ids')
    cache_parser.add_argument('--serial', action='store_true', help='Download one file at a time')
    cache_parser.add_argument('--max-retries', type=int, help='Attempts per file')
    cache_parser.add_argument('--max-workers', type=int, help='Parallel downloads')
    cache_parser.set_defaults(func=cmd_cache)

    # ========== SUMMARY COMMAND ==========
    summary_parser = subparsers.add_parser(
        'summary',
        help='Cross-tabulate a manifest table',
        description='Filter a manifest table and count rows by one or two columns'
    )
    add_common(summary_parser)
    summary_parser.add_argument('--table', default='sessions', help='Table name (default: sessions)')
    summary_parser.add_argument('--rows', required=True, help='Column for the row dimension')
    summary_parser.add_argument('--columns', help='Column for the column dimension')
    summary_parser.add_argument('--unique-by', help='Count distinct values of this column')
    summary_parser.add_argument(
        '--filter',
        action='append',
        help='Filter as kind=value, e.g. structure=VISp (repeatable)'
    )
    summary_parser.set_defaults(func=cmd_summary)

    # Parse arguments
    args = parser.parse_args()

    # Show help if no command provided
    if not args.command:
        parser.print_help()
        return 1

    if args.verbose:
        setup_logging(logging.DEBUG)

    # Execute command
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
