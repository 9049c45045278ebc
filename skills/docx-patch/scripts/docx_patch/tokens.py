"""Token stream over raw XML bytes with original byte ranges.

Edits are expressed as splices against the original buffer, so every byte
outside a splice is copied verbatim. Parsing never round-trips the host
buffer through a DOM.
"""

import bisect
import codecs
import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from lxml import etree

from .common import NS, StructuralError, ValidationError
from xml_utils import escape_xml_attr


TOKEN_PATTERN = re.compile(rb'''
      (?P<comment><!--.*?-->)
    | (?P<cdata><!\[CDATA\[.*?\]\]>)
    | (?P<pi><\?.*?\?>)
    | (?P<doctype><!DOCTYPE(?:[^>\[]|\[[^\]]*\])*>)
    | (?P<end></(?P<end_name>[^\s>/]+)\s*>)
    | (?P<tag><(?P<name>[^\s>/!?]+)
        (?P<attrs>(?:\s+[^\s=>/]+\s*=\s*(?:"[^"]*"|'[^']*'))*)
        \s*(?P<empty>/)?>)
    | (?P<text>[^<]+)
''', re.S | re.X)

ATTR_PATTERN = re.compile(rb'''\s+([^\s=>/]+)\s*=\s*(?:"([^"]*)"|'([^']*)')''')

# Character references, the five predefined entities, or one UTF-8 sequence
TEXT_CHAR_PATTERN = re.compile(
    rb'&(?:#([0-9]+)|#x([0-9A-Fa-f]+)|(amp|lt|gt|quot|apos));'
    rb'|[\x00-\x7f]|[\xc0-\xff][\x80-\xbf]*|[\x80-\xbf]'
)

PREDEFINED_ENTITIES = {
    b'amp': '&',
    b'lt': '<',
    b'gt': '>',
    b'quot': '"',
    b'apos': "'",
}

ELEMENT_KINDS = ('start', 'empty')


@dataclass(frozen=True)
class Token:
    kind: str    # start | end | empty | text | cdata | comment | pi | doctype
    start: int
    end: int
    name: str = ''

    @property
    def prefix(self) -> str:
        return self.name.split(':', 1)[0] if ':' in self.name else ''

    @property
    def local(self) -> str:
        return self.name.rsplit(':', 1)[-1]


class Attribute(NamedTuple):
    name: str
    value: str          # Unescaped value
    start: int          # Includes the leading whitespace
    end: int
    value_start: int
    value_end: int


@dataclass(frozen=True)
class Splice:
    """Replace buffer[start:end] with data (start == end for pure inserts)"""
    start: int
    end: int
    data: bytes


def iter_text_chars(buffer: bytes, start: int, end: int) -> Iterator[Tuple[str, int, int]]:
    """
    Yield (char, byte_start, byte_end) for the escaped text in buffer[start:end].

    Entity and character references decode to one character spanning the
    whole reference.
    """
    for m in TEXT_CHAR_PATTERN.finditer(buffer, start, end):
        decimal, hexa, named = m.group(1), m.group(2), m.group(3)
        if decimal is not None:
            text = chr(int(decimal))
        elif hexa is not None:
            text = chr(int(hexa, 16))
        elif named is not None:
            text = PREDEFINED_ENTITIES[named]
        else:
            text = m.group(0).decode('utf-8', errors='replace')
        for ch in text:
            yield ch, m.start(), m.end()


def unescape(raw: bytes) -> str:
    return ''.join(ch for ch, _, _ in iter_text_chars(raw, 0, len(raw)))


def apply_splices(buffer: bytes, splices: Sequence[Splice]) -> bytes:
    """
    Apply non-overlapping splices to buffer, copying everything else verbatim.

    Inserts at the same offset keep their given order.
    """
    ordered = sorted(enumerate(splices), key=lambda pair: (pair[1].start, pair[1].end, pair[0]))
    parts: List[bytes] = []
    pos = 0
    for _, splice in ordered:
        if splice.start < pos:
            raise ValueError(f"overlapping splice at byte {splice.start}")
        parts.append(buffer[pos:splice.start])
        parts.append(splice.data)
        pos = splice.end
    parts.append(buffer[pos:])
    return b''.join(parts)


def check_well_formed(buffer: bytes):
    """Raise StructuralError unless lxml accepts buffer as a namespace-valid document."""
    parser = etree.XMLParser(resolve_entities=False, huge_tree=True)
    try:
        etree.fromstring(buffer, parser)
    except etree.XMLSyntaxError as exc:
        raise StructuralError(f"result is not well-formed XML: {exc}") from exc


class TokenStream:
    """
    Tokenized view of one XML buffer.

    Args:
        buffer: Raw bytes to scan
        fragment: Allow several top-level elements and top-level text
        base_scope: Namespace bindings inherited by top-level elements

    Raises:
        StructuralError: On unbalanced tags or unrecognizable markup
    """

    def __init__(self, buffer: bytes, fragment: bool = False,
                 base_scope: Optional[Dict[str, str]] = None):
        self.buffer = buffer
        self.fragment = fragment
        self.tokens: List[Token] = []
        self.parent: List[int] = []
        self.closing: Dict[int, int] = {}
        self.uris: Dict[int, Optional[str]] = {}
        self.scopes: List[Dict[str, str]] = []
        self.roots: List[int] = []
        self.base_scope = {'xml': NS['xml']}
        self.base_scope.update(base_scope or {})
        self._tokenize(self.base_scope)
        self._starts = [tok.start for tok in self.tokens]

    def _tokenize(self, base: Dict[str, str]):
        buffer = self.buffer
        stack: List[int] = []
        scope_stack: List[Dict[str, str]] = [base]
        # A leading byte-order mark is not a token; splices copy it verbatim
        pos = len(codecs.BOM_UTF8) if buffer.startswith(codecs.BOM_UTF8) and not self.fragment else 0
        size = len(buffer)
        while pos < size:
            m = TOKEN_PATTERN.match(buffer, pos)
            if m is None:
                raise StructuralError(f"unrecognized markup at byte {pos}")
            kind = m.lastgroup
            index = len(self.tokens)
            parent = stack[-1] if stack else -1
            scope = scope_stack[-1]

            if kind == 'end':
                name = m.group('end_name').decode('utf-8', errors='replace')
                if not stack:
                    raise StructuralError(f"unexpected closing tag </{name}> at byte {pos}")
                opened = stack.pop()
                if self.tokens[opened].name != name:
                    raise StructuralError(
                        f"closing tag </{name}> at byte {pos} does not match "
                        f"<{self.tokens[opened].name}>")
                scope_stack.pop()
                self.tokens.append(Token('end', m.start(), m.end(), name))
                self.closing[opened] = index
                self.parent.append(self.parent[opened])
                self.scopes.append(scope_stack[-1])
            elif kind == 'tag':
                name = m.group('name').decode('utf-8', errors='replace')
                empty = m.group('empty') is not None
                token = Token('empty' if empty else 'start', m.start(), m.end(), name)
                self.tokens.append(token)
                self.parent.append(parent)
                attrs = m.group('attrs')
                if b'xmlns' in attrs:
                    scope = dict(scope)
                    scope.update(self._declarations_in(m.start('attrs'), m.end('attrs')))
                self.scopes.append(scope)
                self.uris[index] = scope.get(token.prefix)
                if not stack:
                    self.roots.append(index)
                if empty:
                    self.closing[index] = index
                else:
                    stack.append(index)
                    scope_stack.append(scope)
            else:
                if not stack and kind == 'text' and not self.fragment and m.group(0).strip():
                    raise StructuralError(f"text outside the root element at byte {pos}")
                self.tokens.append(Token(kind, m.start(), m.end()))
                self.parent.append(parent)
                self.scopes.append(scope)
            pos = m.end()

        if stack:
            unclosed = self.tokens[stack[-1]]
            raise StructuralError(f"element <{unclosed.name}> at byte {unclosed.start} is never closed")
        if not self.fragment and len(self.roots) != 1:
            raise StructuralError(f"expected exactly one root element, found {len(self.roots)}")

    # ==================== Attributes & Namespaces ====================

    def _iter_attributes(self, start: int, end: int) -> Iterator[Attribute]:
        for m in ATTR_PATTERN.finditer(self.buffer, start, end):
            group = 2 if m.group(2) is not None else 3
            yield Attribute(
                name=m.group(1).decode('utf-8', errors='replace'),
                value=unescape(m.group(group)),
                start=m.start(),
                end=m.end(),
                value_start=m.start(group),
                value_end=m.end(group),
            )

    def _declarations_in(self, start: int, end: int) -> Dict[str, str]:
        declared = {}
        for attr in self._iter_attributes(start, end):
            if attr.name == 'xmlns':
                declared[''] = attr.value
            elif attr.name.startswith('xmlns:'):
                declared[attr.name[6:]] = attr.value
        return declared

    def attributes(self, index: int) -> List[Attribute]:
        token = self.tokens[index]
        if token.kind not in ELEMENT_KINDS:
            return []
        return list(self._iter_attributes(token.start + 1 + len(token.name.encode('utf-8')), token.end))

    def get_attr(self, index: int, local: str) -> Optional[Attribute]:
        """Find an attribute by local name, whatever its prefix."""
        for attr in self.attributes(index):
            if attr.name.rsplit(':', 1)[-1] == local and not attr.name.startswith('xmlns'):
                return attr
        return None

    def declarations(self, index: int) -> List[Attribute]:
        return [a for a in self.attributes(index)
                if a.name == 'xmlns' or a.name.startswith('xmlns:')]

    def scope(self, index: int) -> Dict[str, str]:
        """Namespace bindings in scope at token index (including its own declarations)."""
        if index < 0:
            return self.base_scope
        return self.scopes[index]

    def prefix_for(self, index: int, uri: str) -> Optional[str]:
        """Return a prefix bound to uri at index ('' for the default namespace)."""
        scope = self.scope(index)
        for prefix, bound in scope.items():
            if bound == uri and prefix:
                return prefix
        if scope.get('') == uri:
            return ''
        return None

    # ==================== Element Navigation ====================

    @property
    def root(self) -> int:
        if not self.roots:
            raise StructuralError("buffer has no root element")
        return self.roots[0]

    def is_element(self, index: int, uri: str, local: str) -> bool:
        token = self.tokens[index]
        return token.kind in ELEMENT_KINDS and token.local == local and self.uris.get(index) == uri

    def element_span(self, index: int) -> Tuple[int, int]:
        return self.tokens[index].start, self.tokens[self.closing[index]].end

    def inner_span(self, index: int) -> Tuple[int, int]:
        close = self.closing[index]
        if close == index:
            return self.tokens[index].end, self.tokens[index].end
        return self.tokens[index].end, self.tokens[close].start

    def raw(self, index: int) -> bytes:
        start, end = self.element_span(index)
        return self.buffer[start:end]

    def children(self, index: int) -> List[int]:
        close = self.closing[index]
        found = []
        j = index + 1
        while j < close:
            if self.tokens[j].kind in ELEMENT_KINDS:
                found.append(j)
                j = self.closing[j] + 1
            else:
                j += 1
        return found

    def find_child(self, index: int, uri: str, local: str) -> Optional[int]:
        for child in self.children(index):
            if self.is_element(child, uri, local):
                return child
        return None

    def find_children(self, index: int, uri: str, local: str) -> List[int]:
        return [c for c in self.children(index) if self.is_element(c, uri, local)]

    def iter_elements(self, uri: str, local: str, within: Optional[int] = None) -> Iterator[int]:
        """Yield matching element indices in document order."""
        if within is None:
            lo, hi = 0, len(self.tokens)
        else:
            lo, hi = within + 1, self.closing[within]
        for j in range(lo, hi):
            if self.is_element(j, uri, local):
                yield j

    def find_descendant(self, index: int, uri: str, local: str) -> Optional[int]:
        return next(self.iter_elements(uri, local, within=index), None)

    def ancestors(self, index: int) -> Iterator[int]:
        j = self.parent[index]
        while j != -1:
            yield j
            j = self.parent[j]

    def find_ancestor(self, index: int, uri: str, local: str) -> Optional[int]:
        for j in self.ancestors(index):
            if self.is_element(j, uri, local):
                return j
        return None

    def previous_sibling_token(self, index: int) -> Optional[int]:
        """The token right before index when it shares the same parent."""
        j = index - 1
        if j >= 0 and self.parent[j] == self.parent[index]:
            return j
        return None

    def token_index_at(self, offset: int) -> int:
        """Index of the token containing byte offset."""
        j = bisect.bisect_right(self._starts, offset) - 1
        if j < 0 or offset >= self.tokens[j].end:
            raise IndexError(f"no token at byte {offset}")
        return j

    def text(self, index: int) -> str:
        """Concatenated character data of an element and its descendants."""
        close = self.closing[index]
        parts = []
        for j in range(index + 1, close):
            token = self.tokens[j]
            if token.kind == 'text':
                parts.append(unescape(self.buffer[token.start:token.end]))
            elif token.kind == 'cdata':
                parts.append(self.buffer[token.start + 9:token.end - 3].decode('utf-8', errors='replace'))
        return ''.join(parts)

    def is_whitespace_text(self, index: int) -> bool:
        token = self.tokens[index]
        return token.kind == 'text' and not self.buffer[token.start:token.end].strip()


def qname(prefix: str, local: str) -> str:
    return f'{prefix}:{local}' if prefix else local


def prepare_fragment(fragment, scope: Dict[str, str], field_name: str = 'payload') -> bytes:
    """
    Make a caller fragment safe to splice at a point with the given namespace scope.

    Namespace declarations that repeat a binding already in scope are removed,
    so no operation ever introduces a duplicate declaration. The fragment must
    be well-formed and every prefix it uses must be bound.

    Raises:
        ValidationError: If the fragment is empty, malformed, or uses an unbound prefix
    """
    if isinstance(fragment, str):
        try:
            data = fragment.encode('utf-8')
        except UnicodeEncodeError as exc:
            raise ValidationError(field_name, f"markup is not valid Unicode text: {exc.reason}") from exc
    elif isinstance(fragment, (bytes, bytearray)):
        data = bytes(fragment)
    else:
        raise ValidationError(field_name, f"expected markup as str or bytes, got {type(fragment).__name__}")
    if not data.strip():
        raise ValidationError(field_name, "markup fragment cannot be empty")

    try:
        stream = TokenStream(data, fragment=True, base_scope=scope)
    except StructuralError as exc:
        raise ValidationError(field_name, f"malformed markup: {exc}") from exc
    for token in stream.tokens:
        if token.kind in ('pi', 'doctype'):
            raise ValidationError(field_name, "fragment cannot contain declarations or processing instructions")

    splices = []
    for index, token in enumerate(stream.tokens):
        if token.kind not in ELEMENT_KINDS:
            continue
        inherited = stream.scope(stream.parent[index])
        for attr in stream.declarations(index):
            prefix = '' if attr.name == 'xmlns' else attr.name[6:]
            if inherited.get(prefix) == attr.value:
                splices.append(Splice(attr.start, attr.end, b''))
    if splices:
        data = apply_splices(data, splices)

    declarations = ''.join(
        f' xmlns="{escape_xml_attr(uri)}"' if not prefix else f' xmlns:{prefix}="{escape_xml_attr(uri)}"'
        for prefix, uri in scope.items() if prefix != 'xml'
    )
    wrapped = f'<_fragment{declarations}>'.encode('utf-8') + data + b'</_fragment>'
    parser = etree.XMLParser(resolve_entities=False, huge_tree=True)
    try:
        etree.fromstring(wrapped, parser)
    except etree.XMLSyntaxError as exc:
        raise ValidationError(field_name, f"markup is not well-formed in context: {exc}") from exc
    return data
