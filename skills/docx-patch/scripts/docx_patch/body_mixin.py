"""
This mixin applies document-body actions: paragraphs, headings, breaks,
bookmarks and lists. Each handler reads the current document.xml, computes
the new buffer and writes it back only when the whole action succeeded.
"""

from typing import List, Optional

from .common import (
    NS,
    IdentifierKind,
    InsertionSpec,
    InsertTarget,
    PatchItem,
    ValidationError,
    format_text_preview,
)
from .identifiers import ensure_list_numbering, next_identifier
from .insertion import insert_node, wrap_range
from .markup import (
    bookmark_markers,
    bookmark_xml,
    heading_xml,
    list_paragraph_xml,
    page_break_xml,
    paragraph_xml,
    section_break_xml,
)
from .tokens import TokenStream


class BodyPatchMixin:

    def _document_prefix(self) -> str:
        """Prefix bound to WordprocessingML on the document root."""
        stream = TokenStream(self.package.document_xml)
        prefix = stream.prefix_for(stream.root, NS['w'])
        return 'w' if prefix is None else prefix

    def _insert_payload(self, item: PatchItem, payload: str):
        spec = InsertionSpec(
            target=InsertTarget.parse(item.position),
            payload=payload,
            anchor=item.anchor or None,
        )
        self.package.document_xml = insert_node(self.package.document_xml, spec)
        if self.verbose:
            where = spec.target.value
            if spec.target.needs_anchor:
                where += f' "{format_text_preview(spec.anchor)}"'
            print(f"  [Insert] {item.action} at {where}")

    def _apply_paragraph(self, item: PatchItem) -> Optional[List]:
        data = item.data
        payload = paragraph_xml(
            item.text,
            style=data.get('style') or 'Normal',
            bold=bool(data.get('bold')),
            italic=bool(data.get('italic')),
            underline=bool(data.get('underline')),
            prefix=self._document_prefix(),
        )
        self._insert_payload(item, payload)
        return None

    def _apply_heading(self, item: PatchItem) -> Optional[List]:
        level = item.data.get('level', 1)
        self._insert_payload(item, heading_xml(level, item.text, prefix=self._document_prefix()))
        return None

    def _apply_page_break(self, item: PatchItem) -> Optional[List]:
        self._insert_payload(item, page_break_xml(prefix=self._document_prefix()))
        return None

    def _apply_section_break(self, item: PatchItem) -> Optional[List]:
        section_type = item.data.get('section_type') or 'nextPage'
        self._insert_payload(item, section_break_xml(section_type, prefix=self._document_prefix()))
        return None

    def _apply_bookmark(self, item: PatchItem) -> Optional[List]:
        """Insert a new paragraph carrying a bookmark (around text when given)."""
        document = self.package.document_xml
        bookmark_id = next_identifier(document, IdentifierKind.BOOKMARK)
        payload = bookmark_xml(
            item.data.get('name', ''),
            bookmark_id,
            text=item.text or None,
            style=item.data.get('style'),
            prefix=self._document_prefix(),
        )
        self._insert_payload(item, payload)
        return None

    def _apply_wrap_bookmark(self, item: PatchItem) -> Optional[List]:
        """Bookmark existing text: the anchor phrase is wrapped in place."""
        phrase = item.anchor or item.text
        if not phrase.strip():
            raise ValidationError('anchor', "wrap_bookmark needs the text to wrap in 'anchor'")
        document = self.package.document_xml
        bookmark_id = next_identifier(document, IdentifierKind.BOOKMARK)
        markers = bookmark_markers(item.data.get('name', ''), bookmark_id, prefix=self._document_prefix())
        self.package.document_xml = wrap_range(document, phrase, markers)
        if self.verbose:
            print(f"  [Bookmark] id={bookmark_id} around \"{format_text_preview(phrase)}\"")
        return None

    def _list_entries(self, item: PatchItem):
        entries = item.data.get('items')
        if not isinstance(entries, list) or not entries:
            raise ValidationError('items', "list needs a non-empty 'items' array")
        result = []
        for pos, entry in enumerate(entries):
            if isinstance(entry, str):
                result.append((entry, 0))
            elif isinstance(entry, dict):
                result.append((entry.get('text', ''), entry.get('level', 0)))
            else:
                raise ValidationError(f'items[{pos}]', f"expected text or object, got {entry!r}")
        return result

    def _apply_list(self, item: PatchItem) -> Optional[List]:
        """Insert a bullet or numbered list as consecutive list paragraphs."""
        list_type = item.data.get('list_type') or 'bullet'
        entries = self._list_entries(item)
        numbering_before = self.package.numbering_xml
        numbering_after, ids = ensure_list_numbering(numbering_before)
        num_id = ids.num_id_for(list_type)

        prefix = self._document_prefix()
        payload = ''.join(
            list_paragraph_xml(text, num_id, level=level, prefix=prefix)
            for text, level in entries
        )
        self._insert_payload(item, payload)
        # numbering.xml is only touched once the paragraphs are in
        if numbering_after != numbering_before:
            self.package.numbering_xml = numbering_after
            if self.verbose:
                print(f"  [Numbering] Added list definitions "
                      f"(bullet numId={ids.bullet_num_id}, numbered numId={ids.numbered_num_id})")
        return None
