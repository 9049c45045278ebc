#!/usr/bin/env python3
"""
ABOUTME: Shared helpers for docx_patch tests.
ABOUTME: Builds document, chart and numbering part buffers as raw bytes.
"""

import sys
from pathlib import Path
from typing import Sequence

from lxml import etree

# Add skills/docx-patch/scripts directory to path (must be before import)
_scripts_dir = Path(__file__).parent.parent / 'skills' / 'docx-patch' / 'scripts'
sys.path.insert(0, str(_scripts_dir))

from docx_patch.common import NS  # noqa: E402

W_NS = NS['w']
C_NS = NS['c']
A_NS = NS['a']


# ============================================================
# Document parts
# ============================================================

def make_document(body_xml: str, sect_pr: bool = True) -> bytes:
    """Wrap body content in a minimal document.xml."""
    sect = '<w:sectPr><w:pgSz w:w="12240" w:h="15840"/></w:sectPr>' if sect_pr else ''
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        f'<w:document xmlns:w="{W_NS}" xmlns:r="{NS["r"]}">'
        f'<w:body>{body_xml}{sect}</w:body></w:document>'
    ).encode('utf-8')


def para(text: str) -> str:
    return f'<w:p><w:r><w:t>{text}</w:t></w:r></w:p>'


def split_para(*texts: str) -> str:
    """One paragraph with one run per text piece."""
    runs = ''.join(f'<w:r><w:t xml:space="preserve">{t}</w:t></w:r>' for t in texts)
    return f'<w:p>{runs}</w:p>'


def parse(buffer: bytes) -> etree._Element:
    """Parse with lxml; fails the test on malformed output."""
    return etree.fromstring(buffer)


def body_paragraph_texts(buffer: bytes):
    root = parse(buffer)
    texts = []
    for p in root.iter(f'{{{W_NS}}}p'):
        texts.append(''.join(t.text or '' for t in p.iter(f'{{{W_NS}}}t')))
    return texts


def namespace_declaration_count(buffer: bytes, uri: str) -> int:
    return buffer.count(f'"{uri}"'.encode('utf-8'))


# ============================================================
# Chart parts
# ============================================================

def chart_series_xml(index: int, name: str = None, categories: Sequence[str] = ('A', 'B', 'C'),
                     values: Sequence[float] = (1, 2, 3), column: str = 'B') -> str:
    """One bar series referencing Sheet1 with caches."""
    name = name or f'Series {index + 1}'
    n = len(categories)
    cat_pts = ''.join(f'<c:pt idx="{i}"><c:v>{c}</c:v></c:pt>' for i, c in enumerate(categories))
    val_pts = ''.join(f'<c:pt idx="{i}"><c:v>{v}</c:v></c:pt>' for i, v in enumerate(values))
    return (
        f'<c:ser><c:idx val="{index}"/><c:order val="{index}"/>'
        f'<c:tx><c:strRef><c:f>Sheet1!${column}$1</c:f>'
        f'<c:strCache><c:ptCount val="1"/><c:pt idx="0"><c:v>{name}</c:v></c:pt></c:strCache>'
        f'</c:strRef></c:tx>'
        f'<c:spPr><a:solidFill><a:srgbClr val="4472C4"/></a:solidFill></c:spPr>'
        f'<c:invertIfNegative val="0"/>'
        f'<c:cat><c:strRef><c:f>Sheet1!$A$2:$A${n + 1}</c:f>'
        f'<c:strCache><c:ptCount val="{n}"/>{cat_pts}</c:strCache></c:strRef></c:cat>'
        f'<c:val><c:numRef><c:f>Sheet1!${column}$2:${column}${n + 1}</c:f>'
        f'<c:numCache><c:formatCode>General</c:formatCode><c:ptCount val="{len(values)}"/>{val_pts}'
        f'</c:numCache></c:numRef></c:val>'
        f'</c:ser>'
    )


def make_chart(series_count: int = 2, title: bool = True, axis_titles: bool = True,
               indent: str = '') -> bytes:
    """A bar chart part with series_count series on one category/value axis pair."""
    columns = 'BCDEFGH'
    series = ''.join(indent + chart_series_xml(i, column=columns[i]) for i in range(series_count))
    title_xml = ('<c:title><c:tx><c:rich><a:bodyPr/><a:lstStyle/><a:p><a:r><a:t>Old Title</a:t></a:r>'
                 '</a:p></c:rich></c:tx><c:overlay val="0"/></c:title>') if title else ''
    axis_title = '<c:title><c:overlay val="0"/></c:title>' if axis_titles else ''
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        f'<c:chartSpace xmlns:c="{C_NS}" xmlns:a="{A_NS}" xmlns:r="{NS["r"]}">'
        f'<c:chart>{title_xml}<c:autoTitleDeleted val="0"/><c:plotArea><c:layout/>'
        f'<c:barChart><c:barDir val="col"/><c:grouping val="clustered"/><c:varyColors val="0"/>'
        f'{series}{indent}<c:gapWidth val="150"/><c:axId val="111"/><c:axId val="222"/></c:barChart>'
        f'<c:catAx><c:axId val="111"/>{axis_title}<c:crossAx val="222"/></c:catAx>'
        f'<c:valAx><c:axId val="222"/>{axis_title}<c:crossAx val="111"/></c:valAx>'
        f'</c:plotArea></c:chart></c:chartSpace>'
    ).encode('utf-8')


def chart_series(buffer: bytes):
    """Return [(idx, order, name, categories, values, value_formula)] from a chart part."""
    root = parse(buffer)
    c = f'{{{C_NS}}}'
    result = []
    for ser in root.iter(f'{c}ser'):
        idx = ser.find(f'{c}idx').get('val')
        order = ser.find(f'{c}order').get('val')
        name_v = ser.find(f'{c}tx//{c}v')
        cats = [v.text for v in ser.findall(f'{c}cat//{c}pt/{c}v')]
        vals = [v.text for v in ser.findall(f'{c}val//{c}pt/{c}v')]
        formula = ser.find(f'{c}val//{c}f')
        result.append((int(idx), int(order), name_v.text if name_v is not None else None,
                       cats, vals, formula.text if formula is not None else None))
    return result


# ============================================================
# Numbering parts
# ============================================================

def make_numbering(num_ids: Sequence[int] = (1,), abstract_ids: Sequence[int] = (0,)) -> bytes:
    abstracts = ''.join(
        f'<w:abstractNum w:abstractNumId="{a}"><w:lvl w:ilvl="0"><w:start w:val="1"/></w:lvl>'
        f'</w:abstractNum>' for a in abstract_ids
    )
    nums = ''.join(
        f'<w:num w:numId="{n}"><w:abstractNumId w:val="{abstract_ids[0]}"/></w:num>' for n in num_ids
    )
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        f'<w:numbering xmlns:w="{W_NS}">{abstracts}{nums}</w:numbering>'
    ).encode('utf-8')
