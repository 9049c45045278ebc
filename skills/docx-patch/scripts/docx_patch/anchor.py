"""
ABOUTME: Finds anchor phrases in the rendered text of a WordprocessingML part
ABOUTME: Handles phrases split across runs, tabs/breaks and whitespace drift
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .common import (
    NS,
    AnchorMatch,
    BufferLike,
    NotFoundError,
    ValidationError,
    normalize_whitespace,
    to_bytes,
)
from .tokens import ELEMENT_KINDS, TokenStream, iter_text_chars
from xml_utils import escape_xml_attr, escape_xml_text


W = NS['w']

# Run children rendered as whitespace
_BREAK_CHARS = {'tab': '\t', 'br': '\n', 'cr': '\n'}


@dataclass
class _ParagraphView:
    """Rendered characters of one paragraph with their byte spans and runs"""
    index: int                                   # Token index of <w:p>
    chars: List[str] = field(default_factory=list)
    spans: List[Tuple[int, int]] = field(default_factory=list)
    runs: List[int] = field(default_factory=list)  # Run token index, -1 if none

    def normalized(self) -> Tuple[str, List[Tuple[int, int]]]:
        """
        Collapse whitespace runs to one space.

        Returns the normalized text and, per normalized char, the first and
        last raw char index it stands for.
        """
        out: List[str] = []
        mapping: List[Tuple[int, int]] = []
        for k, ch in enumerate(self.chars):
            if ch.isspace():
                if k > 0 and self.chars[k - 1].isspace():
                    mapping[-1] = (mapping[-1][0], k)
                    continue
                out.append(' ')
            else:
                out.append(ch)
            mapping.append((k, k))
        return ''.join(out), mapping


def _validate_phrase(phrase) -> str:
    if not isinstance(phrase, str) or not phrase.strip():
        raise ValidationError('phrase', "anchor phrase cannot be empty")
    try:
        phrase.encode('utf-8')
    except UnicodeEncodeError as exc:
        raise ValidationError('phrase', f"anchor phrase is not valid Unicode text: {exc.reason}") from exc
    return phrase


def _run_of(stream: TokenStream, index: int) -> int:
    run = stream.find_ancestor(index, W, 'r')
    return -1 if run is None else run


def _outermost_paragraph(stream: TokenStream, p_index: int) -> int:
    outer = p_index
    for j in stream.ancestors(p_index):
        if stream.is_element(j, W, 'p'):
            outer = j
    return outer


def _build_match(stream: TokenStream, start: int, end: int,
                 p_index: int, runs: List[int]) -> AnchorMatch:
    block = _outermost_paragraph(stream, p_index)
    enclosing_start, enclosing_end = stream.element_span(block)
    seen = []
    for run in runs:
        if run != -1 and run not in seen:
            seen.append(run)
    return AnchorMatch(
        start_offset=start,
        end_offset=end,
        enclosing_start=enclosing_start,
        enclosing_end=enclosing_end,
        run_spans=tuple(stream.element_span(r) for r in seen),
    )


def _paragraph_views(stream: TokenStream) -> List[_ParagraphView]:
    """One view per paragraph, ordered by paragraph start; nested text goes to the innermost."""
    views: List[_ParagraphView] = []
    open_views: List[_ParagraphView] = []
    tokens = stream.tokens
    for j, token in enumerate(tokens):
        kind = token.kind
        if kind in ELEMENT_KINDS:
            if stream.is_element(j, W, 'p'):
                view = _ParagraphView(index=j)
                views.append(view)
                if kind == 'start':
                    open_views.append(view)
                continue
            if open_views and token.local in _BREAK_CHARS and stream.uris.get(j) == W:
                parent = stream.parent[j]
                if parent != -1 and stream.is_element(parent, W, 'r'):
                    view = open_views[-1]
                    view.chars.append(_BREAK_CHARS[token.local])
                    view.spans.append(stream.element_span(j))
                    view.runs.append(parent)
        elif kind == 'end':
            if open_views and stream.closing.get(open_views[-1].index) == j:
                open_views.pop()
        elif kind in ('text', 'cdata') and open_views:
            parent = stream.parent[j]
            if parent == -1 or not stream.is_element(parent, W, 't'):
                continue
            view = open_views[-1]
            run = _run_of(stream, parent)
            if kind == 'cdata':
                raw = stream.buffer[token.start + 9:token.end - 3].decode('utf-8', errors='replace')
                for ch in raw:
                    view.chars.append(ch)
                    view.spans.append((token.start, token.end))
                    view.runs.append(run)
                continue
            for ch, start, end in iter_text_chars(stream.buffer, token.start, token.end):
                view.chars.append(ch)
                view.spans.append((start, end))
                view.runs.append(run)
    return views


def _matches_in_view(stream: TokenStream, view: _ParagraphView, needle: str,
                     first_only: bool) -> List[AnchorMatch]:
    text, mapping = view.normalized()
    found = []
    pos = text.find(needle)
    while pos != -1:
        raw_first = mapping[pos][0]
        raw_last = mapping[pos + len(needle) - 1][1]
        found.append(_build_match(
            stream,
            view.spans[raw_first][0],
            view.spans[raw_last][1],
            view.index,
            view.runs[raw_first:raw_last + 1],
        ))
        if first_only:
            break
        pos = text.find(needle, pos + len(needle))
    return found


def _fast_path(stream: TokenStream, phrase: str) -> Optional[AnchorMatch]:
    """Literal byte search; a hit must sit inside a single <w:t> text node."""
    data = stream.buffer
    needles = []
    for variant in (phrase, escape_xml_text(phrase), escape_xml_attr(phrase)):
        encoded = variant.encode('utf-8')
        if encoded not in needles:
            needles.append(encoded)

    best: Optional[AnchorMatch] = None
    for needle in needles:
        pos = data.find(needle)
        while pos != -1:
            if best is not None and pos >= best.start_offset:
                break
            match = _validate_hit(stream, pos, pos + len(needle))
            if match is not None:
                best = match
                break
            pos = data.find(needle, pos + 1)
    return best


def _validate_hit(stream: TokenStream, start: int, end: int) -> Optional[AnchorMatch]:
    try:
        j = stream.token_index_at(start)
    except IndexError:
        return None
    token = stream.tokens[j]
    if token.kind != 'text' or end > token.end:
        return None
    parent = stream.parent[j]
    if parent == -1 or not stream.is_element(parent, W, 't'):
        return None
    p_index = stream.find_ancestor(parent, W, 'p')
    if p_index is None:
        return None
    # Reject hits that cut through an entity reference
    boundaries = set()
    for _, char_start, char_end in iter_text_chars(stream.buffer, token.start, token.end):
        boundaries.add(char_start)
        boundaries.add(char_end)
    if start not in boundaries or end not in boundaries:
        return None
    return _build_match(stream, start, end, p_index, [_run_of(stream, parent)])


def locate_in_stream(stream: TokenStream, phrase: str) -> AnchorMatch:
    """locate_anchor over an already tokenized buffer."""
    _validate_phrase(phrase)
    match = _fast_path(stream, phrase)
    if match is not None:
        return match

    needle = normalize_whitespace(phrase)
    best: Optional[AnchorMatch] = None
    for view in _paragraph_views(stream):
        found = _matches_in_view(stream, view, needle, first_only=True)
        if found and (best is None or found[0].start_offset < best.start_offset):
            best = found[0]
    if best is None:
        raise NotFoundError(f"anchor text not found: {phrase!r}")
    return best


def locate_anchor(buffer: BufferLike, phrase: str) -> AnchorMatch:
    """
    Find the first occurrence of phrase in the rendered text of buffer.

    A literal match inside one text node wins first. Otherwise each
    paragraph's rendered text (runs concatenated, tabs and breaks as
    whitespace, whitespace collapsed) is searched and the earliest match is
    mapped back to byte offsets. Matches never span paragraphs.

    Raises:
        ValidationError: If phrase is empty or only whitespace
        NotFoundError: If the phrase does not occur
        StructuralError: If buffer is not well-formed
    """
    _validate_phrase(phrase)
    return locate_in_stream(TokenStream(to_bytes(buffer)), phrase)


def find_anchors(buffer: BufferLike, phrase: str) -> List[AnchorMatch]:
    """All non-overlapping occurrences of phrase, in document order."""
    _validate_phrase(phrase)
    stream = TokenStream(to_bytes(buffer))
    needle = normalize_whitespace(phrase)
    found: List[AnchorMatch] = []
    for view in _paragraph_views(stream):
        found.extend(_matches_in_view(stream, view, needle, first_only=False))
    found.sort(key=lambda m: m.start_offset)
    return found


def document_text(buffer: BufferLike) -> str:
    """Rendered text, one line per paragraph; tabs as '\\t', breaks as '\\n'."""
    stream = TokenStream(to_bytes(buffer))
    return '\n'.join(''.join(view.chars) for view in _paragraph_views(stream))
