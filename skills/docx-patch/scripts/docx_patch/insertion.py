"""
ABOUTME: Splices markup into a WordprocessingML part at body or anchor positions
ABOUTME: Wraps the runs covering a phrase with start/end marker fragments
"""

from typing import List, Tuple

from .anchor import locate_in_stream
from .common import (
    NS,
    BufferLike,
    InsertionSpec,
    InsertTarget,
    MarkerPair,
    NotFoundError,
    StructuralError,
    ValidationError,
    to_bytes,
)
from .tokens import Splice, TokenStream, apply_splices, check_well_formed, prepare_fragment


W = NS['w']


def _find_body(stream: TokenStream) -> int:
    body = stream.find_descendant(stream.root, W, 'body')
    if body is None:
        raise StructuralError("document has no <w:body> element")
    if stream.closing[body] == body:
        raise StructuralError("<w:body> is self-closing; nothing can be inserted into it")
    return body


def _validate_spec(spec: InsertionSpec):
    if not isinstance(spec, InsertionSpec):
        raise ValidationError('spec', f"expected InsertionSpec, got {type(spec).__name__}")
    if spec.target.needs_anchor and (not isinstance(spec.anchor, str) or not spec.anchor.strip()):
        raise ValidationError('anchor', f"an anchor phrase is required for {spec.target.name}")
    if not isinstance(spec.payload, (str, bytes, bytearray)) or not spec.payload.strip():
        raise ValidationError('payload', "payload must be non-empty markup")


def _insertion_point(stream: TokenStream, spec: InsertionSpec) -> Tuple[int, int]:
    """Return (byte offset, token index whose scope applies)."""
    body = _find_body(stream)
    if spec.target is InsertTarget.BODY_START:
        return stream.tokens[body].end, body
    if spec.target is InsertTarget.BODY_END:
        children = stream.children(body)
        if children and stream.is_element(children[-1], W, 'sectPr'):
            return stream.tokens[children[-1]].start, body
        return stream.tokens[stream.closing[body]].start, body

    match = locate_in_stream(stream, spec.anchor)
    block = stream.token_index_at(match.enclosing_start)
    scope_owner = stream.parent[block]
    if spec.target is InsertTarget.AFTER_ANCHOR:
        return match.enclosing_end, scope_owner
    return match.enclosing_start, scope_owner


def plan_insertion(buffer: BufferLike, spec: InsertionSpec) -> Splice:
    """
    Resolve where spec.payload goes without modifying anything.

    The returned splice is a pure insert (start == end) whose data is the
    payload prepared for the namespace scope at that point.
    """
    _validate_spec(spec)
    stream = TokenStream(to_bytes(buffer))
    offset, scope_owner = _insertion_point(stream, spec)
    payload = prepare_fragment(spec.payload, stream.scope(scope_owner))
    return Splice(offset, offset, payload)


def insert_node(buffer: BufferLike, spec: InsertionSpec) -> bytes:
    """
    Insert spec.payload at spec.target.

    The result equals the input with exactly the prepared payload bytes
    inserted at one offset.

    Raises:
        ValidationError: Bad spec, or payload not well-formed in context
        NotFoundError: Anchor phrase not found
        StructuralError: Host buffer malformed or without a usable body
    """
    data = to_bytes(buffer)
    splice = plan_insertion(data, spec)
    result = apply_splices(data, [splice])
    check_well_formed(result)
    return result


def _lowest_common_ancestor(stream: TokenStream, a: int, b: int) -> int:
    chain = {a}
    chain.update(stream.ancestors(a))
    if b in chain:
        return b
    for j in stream.ancestors(b):
        if j in chain:
            return j
    raise StructuralError("runs have no common ancestor")


def _lift_to_child_of(stream: TokenStream, index: int, ancestor: int) -> int:
    while stream.parent[index] != ancestor:
        index = stream.parent[index]
        if index == -1:
            raise StructuralError("element is not inside the expected ancestor")
    return index


def wrap_range(buffer: BufferLike, phrase: str, markers: MarkerPair) -> bytes:
    """
    Surround the runs covering phrase with markers.start / markers.end.

    The start marker goes right before the first covering run and the end
    marker right after the last one. When those runs sit under different
    parents (a hyperlink, a smart tag), both markers move up to the children
    of the runs' common ancestor so the result stays well-formed.

    Raises:
        ValidationError: Empty phrase or malformed marker fragment
        NotFoundError: Phrase not found
        StructuralError: Host buffer malformed
    """
    if not isinstance(markers, MarkerPair):
        raise ValidationError('markers', f"expected MarkerPair, got {type(markers).__name__}")
    if not isinstance(phrase, str) or not phrase.strip():
        raise ValidationError('phrase', "phrase cannot be empty")

    data = to_bytes(buffer)
    stream = TokenStream(data)
    match = locate_in_stream(stream, phrase)
    if not match.run_spans:
        raise NotFoundError(f"no run covers phrase: {phrase!r}")

    first = stream.token_index_at(match.run_spans[0][0])
    last = stream.token_index_at(match.run_spans[-1][0])
    if first == last:
        start_elem = end_elem = first
        common = stream.parent[first]
    else:
        common = _lowest_common_ancestor(stream, first, last)
        start_elem = _lift_to_child_of(stream, first, common)
        end_elem = _lift_to_child_of(stream, last, common)

    scope = stream.scope(common)
    start_bytes = prepare_fragment(markers.start, scope, 'markers.start')
    end_bytes = prepare_fragment(markers.end, scope, 'markers.end')
    start_pos = stream.tokens[start_elem].start
    end_pos = stream.element_span(end_elem)[1]
    splices: List[Splice] = [
        Splice(start_pos, start_pos, start_bytes),
        Splice(end_pos, end_pos, end_bytes),
    ]
    result = apply_splices(data, splices)
    check_well_formed(result)
    return result
