#!/usr/bin/env python3
"""
ABOUTME: Tests for the byte-range token stream, splicing and fragment preparation
"""

import codecs

import pytest

from _docx_patch_helpers import W_NS, make_document, para

from docx_patch.common import InsertionSpec, InsertTarget, StructuralError, ValidationError
from docx_patch.insertion import insert_node
from docx_patch.tokens import (
    Splice,
    TokenStream,
    apply_splices,
    iter_text_chars,
    prepare_fragment,
    unescape,
)


class TestTokenStream:
    """Tokenizing and navigating a well-formed buffer"""

    def test_element_span_covers_original_bytes(self):
        """element_span slices back to the exact original markup"""
        doc = make_document(para('Hello'))
        stream = TokenStream(doc)
        p = next(stream.iter_elements(W_NS, 'p'))
        start, end = stream.element_span(p)
        assert doc[start:end] == b'<w:p><w:r><w:t>Hello</w:t></w:r></w:p>'

    def test_namespace_resolution(self):
        """Prefixed names resolve through in-scope declarations"""
        stream = TokenStream(make_document(para('x')))
        body = stream.find_descendant(stream.root, W_NS, 'body')
        assert body is not None
        assert stream.prefix_for(body, W_NS) == 'w'

    def test_default_namespace(self):
        """Unprefixed elements resolve through xmlns"""
        buffer = f'<document xmlns="{W_NS}"><body><p/></body></document>'.encode()
        stream = TokenStream(buffer)
        assert stream.find_descendant(stream.root, W_NS, 'p') is not None
        assert stream.prefix_for(stream.root, W_NS) == ''

    def test_children_skip_nested_elements(self):
        """children() returns direct child elements only"""
        stream = TokenStream(make_document(para('a') + para('b')))
        body = stream.find_descendant(stream.root, W_NS, 'body')
        names = [stream.tokens[c].local for c in stream.children(body)]
        assert names == ['p', 'p', 'sectPr']

    def test_text_unescapes_entities(self):
        """text() decodes predefined and numeric references"""
        stream = TokenStream(make_document(para('A &amp; B &#233;')))
        t = next(stream.iter_elements(W_NS, 't'))
        assert stream.text(t) == 'A & B é'

    def test_attribute_spans(self):
        """Attribute value spans point at the raw value bytes"""
        buffer = b'<root a="1" b=\'two\'/>'
        stream = TokenStream(buffer)
        attr = stream.get_attr(stream.root, 'b')
        assert attr.value == 'two'
        assert buffer[attr.value_start:attr.value_end] == b'two'

    def test_comments_and_cdata_are_tokens(self):
        """Comments and CDATA sections do not break tag pairing"""
        buffer = b'<root><!-- <not a tag> --><x><![CDATA[<y>]]></x></root>'
        stream = TokenStream(buffer)
        x = stream.children(stream.root)[0]
        assert stream.text(x) == '<y>'

    def test_leading_byte_order_mark(self):
        """A UTF-8 BOM before the prolog is accepted and left outside every token"""
        doc = codecs.BOM_UTF8 + make_document(para('Hello'))
        stream = TokenStream(doc)
        assert stream.tokens[0].start == len(codecs.BOM_UTF8)
        p = next(stream.iter_elements(W_NS, 'p'))
        start, end = stream.element_span(p)
        assert doc[start:end] == b'<w:p><w:r><w:t>Hello</w:t></w:r></w:p>'

    def test_byte_order_mark_kept_by_insert(self):
        """Inserting into a BOM-prefixed part keeps the BOM bytes"""
        doc = codecs.BOM_UTF8 + make_document(para('Intro'))
        result = insert_node(doc, InsertionSpec(InsertTarget.BODY_END, '<w:p/>'))
        assert result.startswith(codecs.BOM_UTF8)
        assert result.replace(b'<w:p/>', b'', 1) == doc


class TestMalformedInput:
    """Malformed buffers raise StructuralError"""

    def test_unclosed_element(self):
        """An element that is never closed is rejected"""
        with pytest.raises(StructuralError):
            TokenStream(b'<root><a></root>')

    def test_mismatched_closing_tag(self):
        """A closing tag must match the open element"""
        with pytest.raises(StructuralError):
            TokenStream(b'<root><a></b></root>')

    def test_two_roots(self):
        """A part must have exactly one root element"""
        with pytest.raises(StructuralError):
            TokenStream(b'<a/><b/>')

    def test_fragment_allows_several_roots(self):
        """Fragments may hold sibling elements"""
        stream = TokenStream(b'<a/><b/>', fragment=True)
        assert len(stream.roots) == 2


class TestTextChars:
    """Character-level mapping back to bytes"""

    def test_multibyte_characters_keep_full_span(self):
        """A UTF-8 sequence is one character with its full byte span"""
        raw = 'aé'.encode('utf-8')
        chars = list(iter_text_chars(raw, 0, len(raw)))
        assert chars == [('a', 0, 1), ('é', 1, 3)]

    def test_entity_is_one_character(self):
        """&amp; decodes to one character spanning five bytes"""
        chars = list(iter_text_chars(b'&amp;', 0, 5))
        assert chars == [('&', 0, 5)]

    def test_unescape(self):
        """Hex character references are decoded"""
        assert unescape(b'&#x41;&lt;') == 'A<'


class TestApplySplices:
    """Splices copy everything else verbatim"""

    def test_inserts_and_replacements(self):
        """Splices apply in offset order regardless of input order"""
        result = apply_splices(b'0123456789', [Splice(8, 9, b'X'), Splice(2, 2, b'ab')])
        assert result == b'01ab234567X9'

    def test_same_offset_keeps_given_order(self):
        """Two inserts at one offset stay in the order given"""
        result = apply_splices(b'ab', [Splice(1, 1, b'1'), Splice(1, 1, b'2')])
        assert result == b'a12b'

    def test_overlap_rejected(self):
        """Overlapping splices are a programming error"""
        with pytest.raises(ValueError):
            apply_splices(b'abcdef', [Splice(1, 4, b''), Splice(2, 3, b'')])


class TestPrepareFragment:
    """Fragments are checked and de-duplicated against the insertion scope"""

    def test_redundant_declaration_removed(self):
        """xmlns:w matching the host binding is dropped"""
        fragment = f'<w:p xmlns:w="{W_NS}"><w:r><w:t>x</w:t></w:r></w:p>'
        result = prepare_fragment(fragment, {'w': W_NS})
        assert result == b'<w:p><w:r><w:t>x</w:t></w:r></w:p>'

    def test_different_binding_kept(self):
        """A declaration that changes the binding is kept"""
        fragment = '<w:p xmlns:w="urn:other"/>'
        assert prepare_fragment(fragment, {'w': W_NS}) == fragment.encode()

    def test_unbound_prefix_rejected(self):
        """A prefix with no binding in scope is rejected"""
        with pytest.raises(ValidationError):
            prepare_fragment('<x:p/>', {'w': W_NS})

    def test_malformed_fragment_rejected(self):
        """Unbalanced markup is rejected"""
        with pytest.raises(ValidationError):
            prepare_fragment('<w:p><w:r></w:p>', {'w': W_NS})

    def test_empty_fragment_rejected(self):
        """Whitespace-only payloads are rejected"""
        with pytest.raises(ValidationError):
            prepare_fragment('   ', {'w': W_NS})
