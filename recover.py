#!/usr/bin/env python3
"""
SQL Object Recovery Tool
Recovers the source of SQL Server objects created WITH ENCRYPTION
from a snapshot of the catalog rows
"""

import sys
import logging
import argparse
from pathlib import Path

from sqlrecover.catalog import SnapshotCatalogStore, split_object_name
from sqlrecover.errors import RecoveryError
from sqlrecover.pipeline import decrypt_objects


log = logging.getLogger('recover')


def output_filename(name):
    """File name for a recovered object: [dbo].[my proc] and my proc -> dbo.my proc.sql"""
    schema, obj = split_object_name(name)
    cleaned = f"{schema}.{obj}"
    cleaned = ''.join('_' if c in '/\\:*?"<>|' else c for c in cleaned)
    return f"{cleaned}.sql"


def cmd_decrypt(args):
    with SnapshotCatalogStore(args.snapshot) as store:
        results = decrypt_objects(store, args.objects, all_fragments=args.all_fragments)

    if args.output:
        out_dir = Path(args.output)
        out_dir.mkdir(parents=True, exist_ok=True)

    failed = 0
    written = {}
    for res in results:
        if not res.ok:
            failed += 1
            print(f"Error: {res.error}", file=sys.stderr)
            continue
        if args.output:
            filename = output_filename(res.name)
            object_id = res.result.object_id
            if written.get(filename, object_id) != object_id:
                filename = f"{filename[:-4]}.{object_id}.sql"
                log.warning('%s: %s already written for another object, using %s',
                            res.name, output_filename(res.name), filename)
            elif filename in written:
                print(f"✓ {res.name} -> already written to {out_dir / filename}")
                continue
            written[filename] = object_id
            out_path = out_dir / filename
            out_path.write_text(res.result.text, encoding='utf-8')
            print(f"✓ {res.name} -> {out_path}")
        else:
            print(res.result.text)

    if failed:
        print(f"\n{failed} of {len(results)} object(s) could not be recovered", file=sys.stderr)
        return 1
    return 0


def cmd_list(args):
    with SnapshotCatalogStore(args.snapshot) as store:
        objects = store.list_objects()

    print(f"{'ID':<12} {'Fragments':<10} {'Name'}")
    print("-" * 60)
    for object_id, name, count in objects:
        print(f"{object_id:<12} {count:<10} {name}")
    print(f"\nTotal encrypted objects: {len(objects)}")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        description='Recover the source of SQL Server objects created WITH ENCRYPTION',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List encrypted objects in a snapshot
  python3 recover.py list --snapshot catalog.db

  # Print the source of a procedure
  python3 recover.py decrypt --snapshot catalog.db dbo.usp_secret

  # Write every fragment of several objects to ./output
  python3 recover.py decrypt --snapshot catalog.db --all-fragments --output ./output v_a dbo.p_b
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Decrypt command
    decrypt_parser = subparsers.add_parser('decrypt', help='Decrypt objects by name')
    decrypt_parser.add_argument('--snapshot', required=True, help='Path to catalog snapshot (SQLite)')
    decrypt_parser.add_argument('--output', help='Write <name>.sql files here instead of printing')
    decrypt_parser.add_argument('--all-fragments', action='store_true',
                                help='Decrypt every subobjid and join them in order')
    decrypt_parser.add_argument('objects', nargs='+', help='Object names, e.g. dbo.usp_secret')
    decrypt_parser.set_defaults(func=cmd_decrypt)

    # List command
    list_parser = subparsers.add_parser('list', help='List encrypted objects in a snapshot')
    list_parser.add_argument('--snapshot', required=True, help='Path to catalog snapshot (SQLite)')
    list_parser.set_defaults(func=cmd_list)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        return 130
    except (RecoveryError, FileNotFoundError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    except Exception:
        log.exception('unexpected error')
        return 1


if __name__ == '__main__':
    sys.exit(main())
