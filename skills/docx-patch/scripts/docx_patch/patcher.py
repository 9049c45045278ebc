"""Document patcher composed from focused mixins."""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .body_mixin import BodyPatchMixin
from .chart_mixin import ChartPatchMixin
from .common import (
    NotFoundError,
    PatchError,
    PatchItem,
    PatchResult,
    StructuralError,
    ValidationError,
    format_text_preview,
)
from .package import DocxPackage


class DocxPatcher(BodyPatchMixin, ChartPatchMixin):
    """
    Applies a JSONL list of patch items to a .docx file.

    Items run in order, each against the buffers left by the previous ones.
    A failed item leaves every buffer as it was.
    """

    def __init__(self, jsonl_path: str, output_path: str = None,
                 source_path: str = None, verbose: bool = False):
        self.jsonl_path = Path(jsonl_path)
        self.verbose = verbose

        # Load JSONL
        self.meta, self.items = self._load_jsonl()

        # Determine paths
        source = source_path or self.meta.get('source_file')
        if not source:
            raise ValueError("No source document: pass --source or add a meta line with source_file")
        self.source_path = Path(source)
        self.output_path = Path(output_path) if output_path else \
            self.source_path.with_stem(self.source_path.stem + '_patched')

        # Package (lazy loaded)
        self.package: DocxPackage = None

        # Results tracking
        self.results: List[PatchResult] = []

    def _load_jsonl(self) -> Tuple[Dict, List[PatchItem]]:
        """
        Load JSONL patch file.

        An optional {"type": "meta", ...} line carries source_file; every
        other non-empty line is one patch item.
        """
        meta = {}
        items = []

        with open(self.jsonl_path, 'r', encoding='utf-8') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Invalid JSON at line {line_num}: {e}") from e
                if not isinstance(data, dict):
                    raise ValueError(f"Line {line_num} is not a JSON object")

                if data.get('type') == 'meta':
                    meta = data
                    continue
                try:
                    items.append(PatchItem.from_dict(data))
                except ValidationError as e:
                    raise ValueError(f"Invalid patch item at line {line_num}: {e}") from e

        return meta, items

    def _handlers(self) -> Dict[str, Callable[[PatchItem], Optional[List]]]:
        return {
            'paragraph': self._apply_paragraph,
            'heading': self._apply_heading,
            'page_break': self._apply_page_break,
            'section_break': self._apply_section_break,
            'bookmark': self._apply_bookmark,
            'wrap_bookmark': self._apply_wrap_bookmark,
            'list': self._apply_list,
            'chart': self._apply_chart,
        }

    def _process_item(self, item: PatchItem) -> PatchResult:
        """Process a single patch item"""
        handler = self._handlers().get(item.action)
        if handler is None:
            return PatchResult(False, item, f"Unknown action: {item.action}")

        try:
            warnings = handler(item)
        except NotFoundError as e:
            return PatchResult(False, item, f"Not found: {e}")
        except ValidationError as e:
            return PatchResult(False, item, f"Invalid item: {e}")
        except StructuralError as e:
            return PatchResult(False, item, f"Structural error: {e}")
        except PatchError as e:
            return PatchResult(False, item, str(e))

        if warnings:
            message = '; '.join(str(w) for w in warnings)
            return PatchResult(True, item, f"Fields left unchanged: {message}", warning=True)
        return PatchResult(True, item)

    def apply(self) -> List[PatchResult]:
        """Execute all patch items"""
        self.package = DocxPackage(self.source_path)

        for i, item in enumerate(self.items):
            if self.verbose:
                preview = format_text_preview(item.text or item.anchor, 40)
                print(f"[{i+1}/{len(self.items)}] {item.action}: {preview}")

            result = self._process_item(item)
            self.results.append(result)

            if self.verbose:
                if not result.success:
                    print(f"  [✗] {result.error_message}")
                elif result.warning:
                    print(f"  [Warning] {result.error_message}")

        return self.results

    def save(self, dry_run: bool = False):
        """Save patched document"""
        if dry_run:
            print(f"[DRY RUN] Would save to: {self.output_path}")
            return

        self.package.save(self.output_path)
        print(f"Saved to: {self.output_path}")

    def save_failed_items(self) -> Optional[Path]:
        """
        Save failed patch items to JSONL file for retry.

        Returns:
            Path to failed items file if any failures exist, None otherwise
        """
        failed_results = [r for r in self.results if not r.success]

        if not failed_results:
            return None

        # Generate output path: <input>_fail.jsonl
        fail_path = self.jsonl_path.with_stem(self.jsonl_path.stem + '_fail')

        with open(fail_path, 'w', encoding='utf-8') as f:
            meta_line = {
                **self.meta,
                'type': 'meta',
                'source_file': str(self.source_path),
                'original_export': self.jsonl_path.name,
                'generated_at': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S%z'),
                'failed_count': len(failed_results),
                'total_count': len(self.items)
            }
            json.dump(meta_line, f, ensure_ascii=False)
            f.write('\n')

            for result in failed_results:
                data = {
                    **result.item.data,
                    '_error': result.error_message  # Add error info for debugging
                }
                json.dump(data, f, ensure_ascii=False)
                f.write('\n')

        return fail_path
