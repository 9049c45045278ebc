#!/usr/bin/env python3
"""
ABOUTME: Applies structural patches (paragraphs, bookmarks, lists, charts) to Word documents
ABOUTME: Reads a JSONL patch file and writes the patched copy of the source document
"""

import argparse
import sys

from docx_patch import DocxPatcher
from docx_patch.common import format_text_preview


def _describe(item) -> str:
    return format_text_preview(item.text or item.anchor or item.data.get('name', ''))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Apply structural patches to a Word document"
    )
    parser.add_argument('jsonl_file', help='Patch file (JSONL format)')
    parser.add_argument('-o', '--output', help='Output file path (default: <source>_patched.docx)')
    parser.add_argument('--source',
                        help='Source document (default: source_file from the meta line)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Validate only, do not save')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Verbose output')

    args = parser.parse_args()

    try:
        patcher = DocxPatcher(
            args.jsonl_file,
            output_path=args.output,
            source_path=args.source,
            verbose=args.verbose
        )

        print(f"Source file: {patcher.source_path}")
        print(f"Output to: {patcher.output_path}")
        print(f"Patch items: {len(patcher.items)}")
        if args.verbose:
            print("-" * 50)

        results = patcher.apply()

        # Statistics
        success_count = sum(1 for r in results if r.success and not r.warning)
        warning_count = sum(1 for r in results if r.success and r.warning)
        fail_count = sum(1 for r in results if not r.success)

        if warning_count > 0:
            print("\nWarning items (applied with unchanged fields):")
            for r in results:
                if r.success and r.warning:
                    print(f"  - [{r.item.action}] {r.error_message}: {_describe(r.item)}")

        if fail_count > 0:
            print("\nFailed items:")
            for r in results:
                if not r.success:
                    print(f"  - [{r.item.action}] {r.error_message}: {_describe(r.item)}")

        print("-" * 50)
        print(f"Completed: {success_count} succeeded, {warning_count} warnings, {fail_count} failed")

        patcher.save(dry_run=args.dry_run)

        # Save failed items for retry
        fail_file = patcher.save_failed_items()
        if fail_file:
            print(f"\n{'=' * 50}")
            print(f"Failed items saved to: {fail_file}")
            print(f"  → You can modify and retry with this file")
            print(f"  → Command: python {sys.argv[0]} {fail_file}")
            print(f"{'=' * 50}")

        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
