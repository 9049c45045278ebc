#!/usr/bin/env python3
"""
ABOUTME: Tests for identifier scanning, explicit allocation and list numbering definitions
"""

import pytest

from _docx_patch_helpers import W_NS, make_document, make_numbering, para, parse

from docx_patch.common import IdentifierKind, StructuralError, ValidationError
from docx_patch.identifiers import (
    IdentifierAllocator,
    ensure_list_numbering,
    next_identifier,
    next_numbering_pair,
)


def _bookmark(bid: str, name: str = 'B') -> str:
    return (f'<w:p><w:bookmarkStart w:id="{bid}" w:name="{name}"/>'
            f'<w:r><w:t>x</w:t></w:r><w:bookmarkEnd w:id="{bid}"/></w:p>')


class TestNextIdentifier:
    """Scanning a buffer for the next unused id"""

    def test_empty_returns_one(self):
        """With no ids of the kind the result is 1"""
        assert next_identifier(make_document(para('x')), IdentifierKind.BOOKMARK) == 1

    def test_max_plus_one(self):
        """The result is one above the highest id"""
        doc = make_document(_bookmark('3') + _bookmark('11') + _bookmark('5'))
        assert next_identifier(doc, IdentifierKind.BOOKMARK) == 12

    def test_written_id_is_not_reused(self):
        """After writing back id N the next call returns more than N"""
        doc = make_document(para('x'))
        first = next_identifier(doc, IdentifierKind.BOOKMARK)
        doc = make_document(_bookmark(str(first)))
        assert next_identifier(doc, IdentifierKind.BOOKMARK) > first

    def test_unparsable_values_skipped(self):
        """Non-integer ids are ignored"""
        doc = make_document(_bookmark('abc') + _bookmark('4'))
        assert next_identifier(doc, IdentifierKind.BOOKMARK) == 5

    def test_kinds_have_separate_scopes(self):
        """Bookmark ids do not affect drawing ids"""
        drawing = ('<w:p><w:r><w:drawing><wp:inline xmlns:wp="urn:wp"><wp:docPr id="9" name="Pic"/>'
                   '</wp:inline></w:drawing></w:r></w:p>')
        doc = make_document(_bookmark('2') + drawing)
        assert next_identifier(doc, IdentifierKind.BOOKMARK) == 3
        assert next_identifier(doc, IdentifierKind.DRAWING) == 10

    def test_comment_and_revision_ids(self):
        """Comment ranges and tracked changes have their own scopes"""
        body = ('<w:p><w:commentRangeStart w:id="4"/><w:ins w:id="7" w:author="A">'
                '<w:r><w:t>x</w:t></w:r></w:ins><w:commentRangeEnd w:id="4"/></w:p>')
        doc = make_document(body)
        assert next_identifier(doc, IdentifierKind.COMMENT) == 5
        assert next_identifier(doc, IdentifierKind.REVISION) == 8

    def test_relationship_ids(self):
        """rId numbers come from Relationship Id attributes"""
        rels = (b'<Relationships xmlns="urn:rels">'
                b'<Relationship Id="rId1" Type="t" Target="a"/>'
                b'<Relationship Id="rId12" Type="t" Target="b"/>'
                b'<Relationship Id="custom" Type="t" Target="c"/></Relationships>')
        assert next_identifier(rels, IdentifierKind.RELATIONSHIP) == 13

    def test_numbering_pair(self):
        """abstractNumId and numId are scanned independently"""
        numbering = make_numbering(num_ids=(1, 2, 6), abstract_ids=(0, 3))
        assert next_numbering_pair(numbering) == (4, 7)

    def test_paragraph_ids_not_confused(self):
        """paraId attributes are not bookmark or comment ids"""
        doc = make_document('<w:p xmlns:w14="urn:w14" w14:paraId="99"><w:r><w:t>x</w:t></w:r></w:p>')
        assert next_identifier(doc, IdentifierKind.BOOKMARK) == 1
        assert next_identifier(doc, IdentifierKind.COMMENT) == 1

    def test_unknown_kind(self):
        """Kinds must be IdentifierKind members"""
        with pytest.raises(ValidationError):
            next_identifier(make_document(para('x')), 'bookmark')


class TestIdentifierAllocator:
    """Explicit allocation state"""

    def test_successive_values(self):
        """allocate() returns consecutive ids starting above the buffer's max"""
        allocator = IdentifierAllocator.from_buffers(make_document(_bookmark('5')))
        assert allocator.allocate(IdentifierKind.BOOKMARK) == 6
        assert allocator.allocate(IdentifierKind.BOOKMARK) == 7
        assert allocator.peek(IdentifierKind.BOOKMARK) == 8

    def test_observe_takes_maximum(self):
        """Observing several buffers keeps the highest next value"""
        allocator = IdentifierAllocator()
        allocator.observe(make_document(_bookmark('20')))
        allocator.observe(make_document(_bookmark('3')))
        assert allocator.allocate(IdentifierKind.BOOKMARK) == 21

    def test_unseen_kind_starts_at_one(self):
        """Kinds never observed start at 1"""
        assert IdentifierAllocator().allocate(IdentifierKind.DRAWING) == 1


class TestEnsureListNumbering:
    """Managed bullet/numbered definitions in numbering.xml"""

    def test_adds_definitions(self):
        """Two abstractNum and two num entries are added with fresh ids"""
        numbering = make_numbering(num_ids=(1,), abstract_ids=(0,))
        result, ids = ensure_list_numbering(numbering)
        root = parse(result)
        num_ids = [n.get(f'{{{W_NS}}}numId') for n in root.findall(f'{{{W_NS}}}num')]
        assert num_ids == ['1', '2', '3']
        assert (ids.bullet_num_id, ids.numbered_num_id) == (2, 3)
        abstract_ids = [a.get(f'{{{W_NS}}}abstractNumId') for a in root.findall(f'{{{W_NS}}}abstractNum')]
        assert abstract_ids == ['0', '1', '2']

    def test_schema_order(self):
        """Every abstractNum precedes every num"""
        result, _ = ensure_list_numbering(make_numbering())
        names = [child.tag.split('}')[1] for child in parse(result) if isinstance(child.tag, str)]
        last_abstract = max(i for i, n in enumerate(names) if n == 'abstractNum')
        first_num = names.index('num')
        assert last_abstract < first_num

    def test_idempotent(self):
        """Running on its own output changes nothing"""
        first, ids = ensure_list_numbering(make_numbering())
        second, again = ensure_list_numbering(first)
        assert second == first
        assert again == ids

    def test_empty_numbering_root(self):
        """A self-closing numbering root is expanded"""
        numbering = f'<w:numbering xmlns:w="{W_NS}"/>'.encode()
        result, ids = ensure_list_numbering(numbering)
        assert (ids.bullet_num_id, ids.numbered_num_id) == (1, 2)
        assert len(parse(result).findall(f'{{{W_NS}}}num')) == 2

    def test_levels_and_formats(self):
        """Bullet and numbered definitions cover nine levels"""
        result, ids = ensure_list_numbering(make_numbering())
        root = parse(result)
        nums = {n.get(f'{{{W_NS}}}numId'): n for n in root.findall(f'{{{W_NS}}}num')}
        num = nums[str(ids.numbered_num_id)]
        abstract_id = num.find(f'{{{W_NS}}}abstractNumId').get(f'{{{W_NS}}}val')
        abstracts = {a.get(f'{{{W_NS}}}abstractNumId'): a for a in root.findall(f'{{{W_NS}}}abstractNum')}
        levels = abstracts[abstract_id].findall(f'{{{W_NS}}}lvl')
        assert len(levels) == 9
        formats = [lvl.find(f'{{{W_NS}}}numFmt').get(f'{{{W_NS}}}val') for lvl in levels[:3]]
        assert formats == ['decimal', 'lowerLetter', 'lowerRoman']
        assert levels[1].find(f'{{{W_NS}}}lvlText').get(f'{{{W_NS}}}val') == '%2.'

    def test_stale_marker_ignored(self):
        """A marker whose num no longer exists triggers new definitions"""
        numbering = make_numbering().replace(
            b'</w:numbering>',
            b'<!-- DOCXPATCH_BULLET_NUMID:40 --><!-- DOCXPATCH_NUMBERED_NUMID:41 --></w:numbering>')
        _, ids = ensure_list_numbering(numbering)
        assert ids.bullet_num_id == 2

    def test_wrong_root(self):
        """Buffers without a numbering root are rejected"""
        with pytest.raises(StructuralError):
            ensure_list_numbering(make_document(para('x')))
