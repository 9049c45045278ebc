"""
ABOUTME: Identifier allocation scoped to the current state of a part buffer
ABOUTME: Also manages the bullet/numbered list definitions in numbering.xml
"""

import re
from typing import Dict, Iterable, Optional, Tuple

from defusedxml import ElementTree as ET

from .common import (
    NS,
    BufferLike,
    IdentifierKind,
    ListNumbering,
    StructuralError,
    ValidationError,
    to_bytes,
)
from .tokens import Splice, TokenStream, apply_splices, check_well_formed, qname


_ATTR_VALUE = rb'''\s*=\s*["']([^"']*)["']'''
_ANY_PREFIX = rb'(?:[\w.-]+:)?'

ID_PATTERNS: Dict[IdentifierKind, 're.Pattern'] = {
    IdentifierKind.BOOKMARK: re.compile(
        rb'<' + _ANY_PREFIX + rb'bookmark(?:Start|End)\b[^>]*?\s' + _ANY_PREFIX + rb'id' + _ATTR_VALUE),
    IdentifierKind.NUMBERING: re.compile(
        rb'\s' + _ANY_PREFIX + rb'numId' + _ATTR_VALUE),
    IdentifierKind.ABSTRACT_NUMBERING: re.compile(
        rb'\s' + _ANY_PREFIX + rb'abstractNumId' + _ATTR_VALUE),
    IdentifierKind.RELATIONSHIP: re.compile(
        rb'''\sId\s*=\s*["']rId([^"']*)["']'''),
    IdentifierKind.DRAWING: re.compile(
        rb'<' + _ANY_PREFIX + rb'docPr\b[^>]*?\sid' + _ATTR_VALUE),
    IdentifierKind.COMMENT: re.compile(
        rb'<' + _ANY_PREFIX + rb'(?:commentRangeStart|commentRangeEnd|commentReference|comment)\b'
        rb'[^>]*?\s' + _ANY_PREFIX + rb'id' + _ATTR_VALUE),
    IdentifierKind.REVISION: re.compile(
        rb'<' + _ANY_PREFIX + rb'(?:ins|del|moveFrom|moveTo|rPrChange|pPrChange|sectPrChange'
        rb'|tblPrChange|trPrChange|tcPrChange|numberingChange)\b'
        rb'[^>]*?\s' + _ANY_PREFIX + rb'id' + _ATTR_VALUE),
}

BULLET_MARKER = 'DOCXPATCH_BULLET_NUMID'
NUMBERED_MARKER = 'DOCXPATCH_NUMBERED_NUMID'
MARKER_PATTERN = re.compile(rb'<!--\s*(DOCXPATCH_(?:BULLET|NUMBERED)_NUMID):(\d+)\s*-->')

# (symbol, font) per level, cycling every three levels
BULLET_LEVELS = (('●', 'Symbol'), ('○', 'Courier New'), ('■', 'Wingdings'))
NUMBERED_LEVELS = ('decimal', 'lowerLetter', 'lowerRoman')
LEVEL_COUNT = 9


def next_identifier(buffer: BufferLike, kind: IdentifierKind) -> int:
    """
    Return the next unused identifier of the given kind in buffer.

    Values that do not parse as integers are skipped. Returns 1 when no
    identifier of that kind is present.
    """
    if not isinstance(kind, IdentifierKind):
        raise ValidationError('kind', f"unknown identifier kind: {kind!r}")
    data = to_bytes(buffer)
    max_id = 0
    for m in ID_PATTERNS[kind].finditer(data):
        try:
            max_id = max(max_id, int(m.group(1)))
        except ValueError:
            pass
    return max_id + 1


def next_numbering_pair(buffer: BufferLike) -> Tuple[int, int]:
    """Return (abstract_num_id, num_id) for a new numbering definition."""
    return (next_identifier(buffer, IdentifierKind.ABSTRACT_NUMBERING),
            next_identifier(buffer, IdentifierKind.NUMBERING))


class IdentifierAllocator:
    """
    Hands out successive identifiers per kind.

    Seed it with every buffer that shares an identifier scope, then thread it
    through the calls that need fresh ids. Nothing is cached per document.
    """

    def __init__(self):
        self._next: Dict[IdentifierKind, int] = {}

    @classmethod
    def from_buffers(cls, *buffers: BufferLike,
                     kinds: Optional[Iterable[IdentifierKind]] = None) -> 'IdentifierAllocator':
        allocator = cls()
        for buffer in buffers:
            allocator.observe(buffer, kinds)
        return allocator

    def observe(self, buffer: BufferLike, kinds: Optional[Iterable[IdentifierKind]] = None):
        """Raise the next value of each kind above everything used in buffer."""
        data = to_bytes(buffer)
        for kind in (kinds or IdentifierKind):
            self._next[kind] = max(self.peek(kind), next_identifier(data, kind))

    def peek(self, kind: IdentifierKind) -> int:
        return self._next.get(kind, 1)

    def allocate(self, kind: IdentifierKind) -> int:
        value = self.peek(kind)
        self._next[kind] = value + 1
        return value


# ============================================================
# List numbering definitions
# ============================================================

def _read_num_map(data: bytes) -> Dict[str, str]:
    """Map numId -> abstractNumId using a safe parser."""
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise StructuralError(f"numbering part is not well-formed: {exc}") from exc
    w = NS['w']
    mapping = {}
    for num in root.findall(f'{{{w}}}num'):
        num_id = num.get(f'{{{w}}}numId')
        abstract = num.find(f'{{{w}}}abstractNumId')
        if num_id is not None and abstract is not None:
            mapping[num_id] = abstract.get(f'{{{w}}}val', '')
    return mapping


def _managed_ids(data: bytes) -> Optional[ListNumbering]:
    """Return marker-tagged definitions when both still exist."""
    markers = {name.decode(): value.decode() for name, value in MARKER_PATTERN.findall(data)}
    bullet = markers.get(BULLET_MARKER)
    numbered = markers.get(NUMBERED_MARKER)
    if bullet is None or numbered is None:
        return None
    num_map = _read_num_map(data)
    if bullet not in num_map or numbered not in num_map:
        return None
    return ListNumbering(bullet_num_id=int(bullet), numbered_num_id=int(numbered))


def _bullet_abstract_xml(abstract_id: int, p: str) -> str:
    levels = []
    for ilvl in range(LEVEL_COUNT):
        symbol, font = BULLET_LEVELS[ilvl % len(BULLET_LEVELS)]
        levels.append(
            f'<{qname(p, "lvl")} {qname(p, "ilvl")}="{ilvl}">'
            f'<{qname(p, "start")} {qname(p, "val")}="1"/>'
            f'<{qname(p, "numFmt")} {qname(p, "val")}="bullet"/>'
            f'<{qname(p, "lvlText")} {qname(p, "val")}="{symbol}"/>'
            f'<{qname(p, "lvlJc")} {qname(p, "val")}="left"/>'
            f'<{qname(p, "pPr")}><{qname(p, "ind")} {qname(p, "left")}="{720 * (ilvl + 1)}" '
            f'{qname(p, "hanging")}="360"/></{qname(p, "pPr")}>'
            f'<{qname(p, "rPr")}><{qname(p, "rFonts")} {qname(p, "ascii")}="{font}" '
            f'{qname(p, "hAnsi")}="{font}" {qname(p, "hint")}="default"/></{qname(p, "rPr")}>'
            f'</{qname(p, "lvl")}>'
        )
    return (f'<{qname(p, "abstractNum")} {qname(p, "abstractNumId")}="{abstract_id}">'
            f'<{qname(p, "multiLevelType")} {qname(p, "val")}="hybridMultilevel"/>'
            + ''.join(levels) +
            f'</{qname(p, "abstractNum")}>')


def _numbered_abstract_xml(abstract_id: int, p: str) -> str:
    levels = []
    for ilvl in range(LEVEL_COUNT):
        fmt = NUMBERED_LEVELS[ilvl % len(NUMBERED_LEVELS)]
        levels.append(
            f'<{qname(p, "lvl")} {qname(p, "ilvl")}="{ilvl}">'
            f'<{qname(p, "start")} {qname(p, "val")}="1"/>'
            f'<{qname(p, "numFmt")} {qname(p, "val")}="{fmt}"/>'
            f'<{qname(p, "lvlText")} {qname(p, "val")}="%{ilvl + 1}."/>'
            f'<{qname(p, "lvlJc")} {qname(p, "val")}="left"/>'
            f'<{qname(p, "pPr")}><{qname(p, "ind")} {qname(p, "left")}="{720 * (ilvl + 1)}" '
            f'{qname(p, "hanging")}="360"/></{qname(p, "pPr")}>'
            f'</{qname(p, "lvl")}>'
        )
    return (f'<{qname(p, "abstractNum")} {qname(p, "abstractNumId")}="{abstract_id}">'
            f'<{qname(p, "multiLevelType")} {qname(p, "val")}="hybridMultilevel"/>'
            + ''.join(levels) +
            f'</{qname(p, "abstractNum")}>')


def _num_xml(num_id: int, abstract_id: int, marker: str, p: str) -> str:
    return (f'<!-- {marker}:{num_id} -->'
            f'<{qname(p, "num")} {qname(p, "numId")}="{num_id}">'
            f'<{qname(p, "abstractNumId")} {qname(p, "val")}="{abstract_id}"/>'
            f'</{qname(p, "num")}>')


def ensure_list_numbering(numbering_buffer: BufferLike) -> Tuple[bytes, ListNumbering]:
    """
    Make sure numbering.xml holds one bullet and one numbered list definition.

    Definitions added by an earlier call are found through their marker
    comments and reused, so calling this on its own output changes nothing.
    New abstractNum elements go before the first num (schema order), new num
    elements after the last one.

    Returns:
        (buffer, ListNumbering) - buffer is unchanged when definitions exist

    Raises:
        StructuralError: If the buffer has no numbering root element
    """
    data = to_bytes(numbering_buffer)
    stream = TokenStream(data)
    root = stream.root
    if not stream.is_element(root, NS['w'], 'numbering'):
        raise StructuralError("numbering part has no <w:numbering> root element")

    existing = _managed_ids(data)
    if existing is not None:
        return data, existing

    prefix = stream.prefix_for(root, NS['w'])
    if prefix is None:
        prefix = 'w'
    allocator = IdentifierAllocator.from_buffers(
        data, kinds=(IdentifierKind.NUMBERING, IdentifierKind.ABSTRACT_NUMBERING))
    bullet_abstract = allocator.allocate(IdentifierKind.ABSTRACT_NUMBERING)
    numbered_abstract = allocator.allocate(IdentifierKind.ABSTRACT_NUMBERING)
    bullet_num = allocator.allocate(IdentifierKind.NUMBERING)
    numbered_num = allocator.allocate(IdentifierKind.NUMBERING)

    abstracts = (_bullet_abstract_xml(bullet_abstract, prefix)
                 + _numbered_abstract_xml(numbered_abstract, prefix)).encode('utf-8')
    nums = (_num_xml(bullet_num, bullet_abstract, BULLET_MARKER, prefix)
            + _num_xml(numbered_num, numbered_abstract, NUMBERED_MARKER, prefix)).encode('utf-8')

    if stream.closing[root] == root:
        # <w:numbering/> with no children
        token = stream.tokens[root]
        open_tag = data[token.start:token.end - 2].rstrip() + b'>'
        close_tag = f'</{token.name}>'.encode('utf-8')
        splices = [Splice(token.start, token.end, open_tag + abstracts + nums + close_tag)]
    else:
        num_elems = stream.find_children(root, NS['w'], 'num')
        cleanup = stream.find_child(root, NS['w'], 'numIdMacAtCleanup')
        tail = (stream.tokens[cleanup].start if cleanup is not None
                else stream.tokens[stream.closing[root]].start)
        if num_elems:
            abstract_pos = stream.tokens[num_elems[0]].start
            num_pos = stream.element_span(num_elems[-1])[1]
            splices = [Splice(abstract_pos, abstract_pos, abstracts),
                       Splice(num_pos, num_pos, nums)]
        else:
            splices = [Splice(tail, tail, abstracts + nums)]

    result = apply_splices(data, splices)
    check_well_formed(result)
    return result, ListNumbering(bullet_num_id=bullet_num, numbered_num_id=numbered_num)
