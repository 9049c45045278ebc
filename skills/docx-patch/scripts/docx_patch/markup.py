"""
ABOUTME: Builders for WordprocessingML payload fragments
ABOUTME: All caller text is escaped; the namespace prefix follows the host part
"""

import re
from typing import List, Optional

from .common import (
    HEADING_STYLES,
    MAX_LIST_LEVEL,
    SECTION_BREAK_TYPES,
    MarkerPair,
    ValidationError,
    validate_bookmark_name,
)
from .tokens import qname
from xml_utils import escape_xml_attr, escape_xml_text


_SEGMENT_PATTERN = re.compile(r'(\r\n|\n|\r|\t)')


def _needs_preserve(text: str) -> bool:
    return text != text.strip() or '  ' in text


def _text_xml(text: str, prefix: str) -> str:
    t = qname(prefix, 't')
    space = ' xml:space="preserve"' if _needs_preserve(text) else ''
    return f'<{t}{space}>{escape_xml_text(text)}</{t}>'


def run_content_xml(text: str, prefix: str = 'w') -> str:
    """Run children for text: line breaks become br, tabs become tab."""
    parts: List[str] = []
    for segment in _SEGMENT_PATTERN.split(text):
        if not segment:
            continue
        if segment == '\t':
            parts.append(f'<{qname(prefix, "tab")}/>')
        elif segment in ('\n', '\r', '\r\n'):
            parts.append(f'<{qname(prefix, "br")}/>')
        else:
            parts.append(_text_xml(segment, prefix))
    return ''.join(parts)


def run_xml(text: str, bold: bool = False, italic: bool = False,
            underline: bool = False, prefix: str = 'w') -> str:
    props = []
    if bold:
        props.append(f'<{qname(prefix, "b")}/>')
    if italic:
        props.append(f'<{qname(prefix, "i")}/>')
    if underline:
        props.append(f'<{qname(prefix, "u")} {qname(prefix, "val")}="single"/>')
    rpr = f'<{qname(prefix, "rPr")}>{"".join(props)}</{qname(prefix, "rPr")}>' if props else ''
    r = qname(prefix, 'r')
    return f'<{r}>{rpr}{run_content_xml(text, prefix)}</{r}>'


def _ppr_xml(prefix: str, style: Optional[str] = None, extra: str = '') -> str:
    inner = ''
    if style and style != 'Normal':
        inner += f'<{qname(prefix, "pStyle")} {qname(prefix, "val")}="{escape_xml_attr(style)}"/>'
    inner += extra
    if not inner:
        return ''
    return f'<{qname(prefix, "pPr")}>{inner}</{qname(prefix, "pPr")}>'


def _require_text(text, field_name: str = 'text') -> str:
    if not isinstance(text, str) or not text:
        raise ValidationError(field_name, "text cannot be empty")
    return text


def paragraph_xml(text: str, style: str = 'Normal', bold: bool = False,
                  italic: bool = False, underline: bool = False, prefix: str = 'w') -> str:
    """
    Build one paragraph holding text in a single run.

    Args:
        text: Plain text; '\\n' becomes a line break and '\\t' a tab
        style: Paragraph style id ('Normal' writes no pStyle)
        bold, italic, underline: Run formatting
        prefix: Namespace prefix bound to WordprocessingML at the insertion point

    Raises:
        ValidationError: If text is empty
    """
    _require_text(text)
    p = qname(prefix, 'p')
    return (f'<{p}>{_ppr_xml(prefix, style)}'
            f'{run_xml(text, bold, italic, underline, prefix)}</{p}>')


def heading_xml(level: int, text: str, prefix: str = 'w') -> str:
    if isinstance(level, bool) or level not in HEADING_STYLES:
        raise ValidationError('level', f"heading level must be 1-{max(HEADING_STYLES)}, got {level!r}")
    return paragraph_xml(text, style=HEADING_STYLES[level], prefix=prefix)


def bookmark_markers(name: str, bookmark_id: int, prefix: str = 'w') -> MarkerPair:
    """Start/end markers for wrapping existing runs in a bookmark."""
    validate_bookmark_name(name)
    id_attr = qname(prefix, 'id')
    return MarkerPair(
        start=(f'<{qname(prefix, "bookmarkStart")} {id_attr}="{int(bookmark_id)}" '
               f'{qname(prefix, "name")}="{escape_xml_attr(name)}"/>'),
        end=f'<{qname(prefix, "bookmarkEnd")} {id_attr}="{int(bookmark_id)}"/>',
    )


def bookmark_xml(name: str, bookmark_id: int, text: Optional[str] = None,
                 style: Optional[str] = None, prefix: str = 'w') -> str:
    """A paragraph with a bookmark, around text when given, otherwise empty."""
    markers = bookmark_markers(name, bookmark_id, prefix)
    runs = run_xml(text, prefix=prefix) if text else ''
    p = qname(prefix, 'p')
    return f'<{p}>{_ppr_xml(prefix, style)}{markers.start}{runs}{markers.end}</{p}>'


def page_break_xml(prefix: str = 'w') -> str:
    p, r = qname(prefix, 'p'), qname(prefix, 'r')
    return f'<{p}><{r}><{qname(prefix, "br")} {qname(prefix, "type")}="page"/></{r}></{p}>'


def section_break_xml(section_type: str = 'nextPage', prefix: str = 'w') -> str:
    """
    An empty paragraph whose properties end the current section.

    Only the break type is written; page size and margins continue from the
    document's final section properties.
    """
    if section_type not in SECTION_BREAK_TYPES:
        raise ValidationError('section_type', f"must be one of {', '.join(SECTION_BREAK_TYPES)}, "
                                              f"got {section_type!r}")
    sect = qname(prefix, 'sectPr')
    sect_xml = (f'<{sect}><{qname(prefix, "type")} {qname(prefix, "val")}="{section_type}"/>'
                f'</{sect}>')
    p = qname(prefix, 'p')
    return f'<{p}>{_ppr_xml(prefix, extra=sect_xml)}</{p}>'


def list_paragraph_xml(text: str, num_id: int, level: int = 0,
                       style: str = 'ListParagraph', prefix: str = 'w') -> str:
    _require_text(text)
    if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= MAX_LIST_LEVEL:
        raise ValidationError('level', f"list level must be 0-{MAX_LIST_LEVEL}, got {level!r}")
    num_pr = (f'<{qname(prefix, "numPr")}>'
              f'<{qname(prefix, "ilvl")} {qname(prefix, "val")}="{level}"/>'
              f'<{qname(prefix, "numId")} {qname(prefix, "val")}="{int(num_id)}"/>'
              f'</{qname(prefix, "numPr")}>')
    p = qname(prefix, 'p')
    return f'<{p}>{_ppr_xml(prefix, style, num_pr)}{run_xml(text, prefix=prefix)}</{p}>'
