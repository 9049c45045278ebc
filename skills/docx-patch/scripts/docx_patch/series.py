"""
ABOUTME: Rewrites the series list of a DrawingML chart part in place
ABOUTME: Recomputes cell-range formulas and updates chart/axis titles
"""

import math
import re
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .common import (
    NS,
    BufferLike,
    FormatError,
    NotFoundError,
    Series,
    StructuralError,
    ValidationError,
    to_bytes,
)
from .tokens import Splice, TokenStream, apply_splices, check_well_formed, qname
from xml_utils import escape_xml_attr, escape_xml_text


C = NS['c']
A = NS['a']

CATEGORY_TAGS = ('cat', 'xVal')
VALUE_TAGS = ('val', 'yVal')

# Series children that come after the values element
VALUE_FOLLOWERS = ('shape', 'smooth', 'bubbleSize', 'bubble3D', 'extLst')

# Chart group children that come after the last series
SERIES_FOLLOWERS = (
    'dLbls', 'dropLines', 'hiLowLines', 'upDownBars', 'marker', 'smooth',
    'gapWidth', 'gapDepth', 'overlap', 'serLines', 'shape', 'firstSliceAng',
    'holeSize', 'bubble3D', 'bubbleScale', 'showNegBubbles', 'sizeRepresents',
    'axId', 'extLst',
)

XY_GROUPS = ('scatterChart', 'bubbleChart')

CELL_RANGE_PATTERN = re.compile(
    r'^(?P<sheet>.*!)?'
    r'(?P<c1>\$?)(?P<col1>[A-Za-z]{1,3})(?P<r1>\$?)(?P<row1>\d+)'
    r'(?::(?P<c2>\$?)(?P<col2>[A-Za-z]{1,3})(?P<r2>\$?)(?P<row2>\d+))?$'
)


# ============================================================
# Number & formula helpers
# ============================================================

def format_number(value) -> str:
    """Plain decimal text for a cached value, never in exponent notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    value = float(value)
    if value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return format(Decimal(repr(value)), 'f')


def _as_number(value) -> float:
    if isinstance(value, bool):
        raise ValueError(value)
    number = float(value.strip()) if isinstance(value, str) else float(value)
    if not math.isfinite(number):
        raise ValueError(value)
    return number


def column_index(letters: str) -> int:
    """'A' -> 1, 'Z' -> 26, 'AA' -> 27"""
    index = 0
    for ch in letters.upper():
        index = index * 26 + (ord(ch) - ord('A') + 1)
    return index


def column_letters(index: int) -> str:
    if index < 1:
        raise ValueError(f"column index must be positive, got {index}")
    letters = ''
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord('A') + rem) + letters
    return letters


def _parse_range(formula: str):
    m = CELL_RANGE_PATTERN.match(formula.strip())
    if m is None:
        raise FormatError('formula', f"no recognizable cell range in {formula!r}")
    return m


def update_formula_range(formula: str, count: int) -> str:
    """
    Resize a one-dimensional cell range to hold count cells.

    'Sheet1!$A$2:$A$4' with count 5 becomes 'Sheet1!$A$2:$A$6'; a single-row
    range grows to the right instead. A count of zero or less leaves the
    formula unchanged.

    Raises:
        FormatError: If the formula is not a one-dimensional range
    """
    if count <= 0:
        return formula
    m = _parse_range(formula)
    sheet = m.group('sheet') or ''
    head = f"{sheet}{m.group('c1')}{m.group('col1')}{m.group('r1')}{m.group('row1')}"
    if m.group('col2') is None:
        if count == 1:
            return formula
        raise FormatError('formula', f"single cell {formula!r} cannot hold {count} values")

    row1, row2 = int(m.group('row1')), int(m.group('row2'))
    col1, col2 = m.group('col1'), m.group('col2')
    if col1.upper() == col2.upper():
        end_row = row1 + count - 1
        return f"{head}:{m.group('c2')}{col2}{m.group('r2')}{end_row}"
    if row1 == row2:
        end_col = column_letters(column_index(col1) + count - 1)
        return f"{head}:{m.group('c2')}{end_col}{m.group('r2')}{row2}"
    raise FormatError('formula', f"two-dimensional range {formula!r} is not supported")


def shift_formula_columns(formula: str, offset: int) -> str:
    """Move a cell or range offset columns to the right."""
    m = _parse_range(formula)
    sheet = m.group('sheet') or ''
    col1 = column_letters(column_index(m.group('col1')) + offset)
    shifted = f"{sheet}{m.group('c1')}{col1}{m.group('r1')}{m.group('row1')}"
    if m.group('col2') is not None:
        col2 = column_letters(column_index(m.group('col2')) + offset)
        shifted += f":{m.group('c2')}{col2}{m.group('r2')}{m.group('row2')}"
    return shifted


# ============================================================
# Splice helpers
# ============================================================

def _replace_inner(stream: TokenStream, index: int, content: bytes) -> Splice:
    """Replace an element's content, expanding a self-closing element if needed."""
    token = stream.tokens[index]
    if stream.closing[index] == index:
        open_tag = stream.buffer[token.start:token.end - 2].rstrip() + b'>'
        return Splice(token.start, token.end, open_tag + content + f'</{token.name}>'.encode('utf-8'))
    start, end = stream.inner_span(index)
    return Splice(start, end, content)


def _set_attr(stream: TokenStream, index: int, local: str, value: str) -> Splice:
    attr = stream.get_attr(index, local)
    if attr is not None:
        return Splice(attr.value_start, attr.value_end, escape_xml_attr(value).encode('utf-8'))
    token = stream.tokens[index]
    pos = token.end - (2 if token.kind == 'empty' else 1)
    return Splice(pos, pos, f' {local}="{escape_xml_attr(value)}"'.encode('utf-8'))


def _cache_points_xml(p: str, texts: Sequence[str]) -> str:
    pts = ''.join(
        f'<{qname(p, "pt")} idx="{i}"><{qname(p, "v")}>{escape_xml_text(t)}</{qname(p, "v")}></{qname(p, "pt")}>'
        for i, t in enumerate(texts)
    )
    return f'<{qname(p, "ptCount")} val="{len(texts)}"/>{pts}'


class _SeriesEditor:
    """Collects splices that rewrite series inside one token stream."""

    def __init__(self, stream: TokenStream, errors: List[FormatError]):
        self.stream = stream
        self.errors = errors
        self.splices: List[Splice] = []

    def child(self, index: int, *locals_: str) -> Optional[int]:
        for local in locals_:
            found = self.stream.find_child(index, C, local)
            if found is not None:
                return found
        return None

    def insert(self, pos: int, xml: str):
        self.splices.append(Splice(pos, pos, xml.encode('utf-8')))

    # ---------- whole series ----------

    def rewrite(self, ser: int, series: Series, field_name: str,
                column_shift: int = 0, renumber: Optional[Tuple[int, int]] = None,
                xy: Optional[bool] = None):
        stream = self.stream
        if xy is None:
            xy = self._is_xy(ser)
        p = stream.tokens[ser].prefix
        if renumber is not None:
            for local, value in zip(('idx', 'order'), renumber):
                elem = self.child(ser, local)
                if elem is not None:
                    self.splices.append(_set_attr(stream, elem, 'val', str(value)))

        if series.name is not None:
            self._rewrite_name(ser, p, str(series.name), field_name, column_shift)

        category_tag = 'xVal' if xy else 'cat'
        value_tag = 'yVal' if xy else 'val'
        cat = self.child(ser, *CATEGORY_TAGS)
        val = self.child(ser, *VALUE_TAGS)

        if cat is not None:
            if series.categories:
                self._rewrite_data(cat, series.categories, False, f"{field_name}.categories", 0)
        elif series.categories:
            if val is not None:
                pos = stream.tokens[val].start
            else:
                pos = self._position_before(ser, VALUE_FOLLOWERS)
            self.insert(pos, self._literal_xml(p, category_tag, 'strLit', series.categories))

        if val is not None:
            self._rewrite_data(val, series.values, True, f"{field_name}.values", column_shift)
        elif series.values:
            if cat is not None:
                pos = stream.element_span(cat)[1]
            else:
                pos = self._position_before(ser, VALUE_FOLLOWERS)
            self.insert(pos, self._literal_xml(p, value_tag, 'numLit',
                                               [format_number(v) for v in series.values]))

    def _is_xy(self, ser: int) -> bool:
        parent = self.stream.parent[ser]
        return parent != -1 and self.stream.tokens[parent].local in XY_GROUPS

    def _position_before(self, index: int, followers: Sequence[str]) -> int:
        stream = self.stream
        for child in stream.children(index):
            if stream.uris.get(child) == C and stream.tokens[child].local in followers:
                return stream.tokens[child].start
        return stream.inner_span(index)[1]

    @staticmethod
    def _literal_xml(p: str, tag: str, literal: str, texts: Sequence[str]) -> str:
        return (f'<{qname(p, tag)}><{qname(p, literal)}>{_cache_points_xml(p, texts)}'
                f'</{qname(p, literal)}></{qname(p, tag)}>')

    # ---------- name ----------

    def _rewrite_name(self, ser: int, p: str, name: str, field_name: str, column_shift: int):
        stream = self.stream
        tx = self.child(ser, 'tx')
        if tx is None:
            anchor = self.child(ser, 'order', 'idx')
            pos = stream.element_span(anchor)[1] if anchor is not None else stream.inner_span(ser)[0]
            self.insert(pos, f'<{qname(p, "tx")}><{qname(p, "v")}>{escape_xml_text(name)}'
                             f'</{qname(p, "v")}></{qname(p, "tx")}>')
            return
        v = self.child(tx, 'v')
        if v is not None:
            self.splices.append(_replace_inner(stream, v, escape_xml_text(name).encode('utf-8')))
            return
        ref = self.child(tx, 'strRef')
        if ref is None:
            self.errors.append(FormatError(f"{field_name}.name", "series name has no value or reference"))
            return
        if column_shift:
            self._rewrite_formula(ref, None, column_shift, f"{field_name}.name")
        self._rewrite_cache(ref, 'strCache', [name], False, f"{field_name}.name")

    # ---------- categories / values ----------

    def _rewrite_data(self, elem: int, items: Sequence, numeric_items: bool,
                      field_name: str, column_shift: int):
        ref = self.child(elem, 'numRef', 'strRef')
        if ref is not None:
            if self.stream.tokens[ref].local == 'numRef':
                cached = self._rewrite_cache(ref, 'numCache', items, True, field_name)
            else:
                cached = self._rewrite_cache(ref, 'strCache', items, False, field_name)
            if not cached:
                return
            self._rewrite_formula(ref, len(items), column_shift, field_name)
            if not items and self.child(ref, 'f') is not None:
                # A cell range cannot span zero cells
                self.errors.append(FormatError(f"{field_name}.formula",
                                               "no data points; range formula left at its old length"))
            return
        literal = self.child(elem, 'numLit', 'strLit')
        if literal is not None:
            numeric = self.stream.tokens[literal].local == 'numLit'
            content = self._cache_content(literal, items, numeric, field_name)
            if content is not None:
                self.splices.append(_replace_inner(self.stream, literal, content))
            return
        self.errors.append(FormatError(field_name, "unsupported data source "
                                                   "(expected strRef, numRef, strLit or numLit)"))

    def _rewrite_formula(self, ref: int, count: Optional[int], column_shift: int, field_name: str):
        f = self.child(ref, 'f')
        if f is None:
            return
        original = self.stream.text(f)
        formula = original
        if column_shift:
            try:
                formula = shift_formula_columns(formula, column_shift)
            except FormatError as exc:
                self.errors.append(FormatError(f"{field_name}.formula", str(exc)))
        if count:
            try:
                formula = update_formula_range(formula, count)
            except FormatError as exc:
                self.errors.append(FormatError(f"{field_name}.formula", str(exc)))
        if formula != original:
            self.splices.append(_replace_inner(self.stream, f, escape_xml_text(formula).encode('utf-8')))

    def _rewrite_cache(self, ref: int, cache_local: str, items: Sequence,
                       numeric: bool, field_name: str) -> bool:
        stream = self.stream
        cache = self.child(ref, cache_local)
        content = self._cache_content(cache, items, numeric, field_name, owner=ref)
        if content is None:
            return False
        if cache is not None:
            self.splices.append(_replace_inner(stream, cache, content))
            return True
        p = stream.tokens[ref].prefix
        f = self.child(ref, 'f')
        pos = stream.element_span(f)[1] if f is not None else stream.inner_span(ref)[0]
        tag = qname(p, cache_local)
        self.splices.append(Splice(pos, pos, f'<{tag}>'.encode('utf-8') + content
                                   + f'</{tag}>'.encode('utf-8')))
        return True

    def _cache_content(self, cache: Optional[int], items: Sequence,
                       numeric: bool, field_name: str,
                       owner: Optional[int] = None) -> Optional[bytes]:
        """New cache children; formatCode and extLst are kept byte-for-byte."""
        stream = self.stream
        if numeric:
            texts = []
            for pos, item in enumerate(items):
                try:
                    texts.append(format_number(_as_number(item)))
                except (TypeError, ValueError):
                    self.errors.append(FormatError(f"{field_name}[{pos}]", f"not a number: {item!r}"))
                    return None
        else:
            texts = [item if isinstance(item, str) else format_number(item) for item in items]

        head = tail = b''
        p = stream.tokens[cache if cache is not None else owner].prefix
        if cache is not None:
            format_code = self.child(cache, 'formatCode')
            if format_code is not None:
                head = stream.raw(format_code)
            ext = self.child(cache, 'extLst')
            if ext is not None:
                tail = stream.raw(ext)
        return head + _cache_points_xml(p, texts).encode('utf-8') + tail


# ============================================================
# Public operations
# ============================================================

def _series_elements(stream: TokenStream) -> List[int]:
    return list(stream.iter_elements(C, 'ser'))


def count_series(buffer: BufferLike) -> int:
    return len(_series_elements(TokenStream(to_bytes(buffer))))


def _drop_splice(stream: TokenStream, ser: int) -> Splice:
    start, end = stream.element_span(ser)
    prev = stream.previous_sibling_token(ser)
    if prev is not None and stream.is_whitespace_text(prev):
        start = stream.tokens[prev].start
    return Splice(start, end, b'')


def _max_child_val(stream: TokenStream, sers: Sequence[int], local: str) -> int:
    highest = -1
    for ser in sers:
        elem = stream.find_child(ser, C, local)
        if elem is None:
            continue
        attr = stream.get_attr(elem, 'val')
        try:
            highest = max(highest, int(attr.value))
        except (AttributeError, ValueError):
            pass
    return highest


def _first_chart_group(stream: TokenStream) -> int:
    plot_area = stream.find_descendant(stream.root, C, 'plotArea')
    if plot_area is not None:
        for child in stream.children(plot_area):
            if stream.uris.get(child) == C and stream.tokens[child].local.endswith('Chart'):
                if stream.closing[child] == child:
                    raise StructuralError(f"chart group <{stream.tokens[child].name}> is self-closing")
                return child
    raise StructuralError("chart part has no chart group to hold series")


def _extension_splices(stream: TokenStream, sers: List[int], extra: Sequence[Series],
                       first_index: int, errors: List[FormatError]) -> List[Splice]:
    next_idx = _max_child_val(stream, sers, 'idx') + 1
    next_order = _max_child_val(stream, sers, 'order') + 1

    if not sers:
        group = _first_chart_group(stream)
        p = stream.tokens[group].prefix
        xy = stream.tokens[group].local in XY_GROUPS
        editor = _SeriesEditor(stream, errors)
        pos = editor._position_before(group, SERIES_FOLLOWERS)
        parts = []
        for k, series in enumerate(extra):
            body = (f'<{qname(p, "idx")} val="{next_idx + k}"/>'
                    f'<{qname(p, "order")} val="{next_order + k}"/>')
            if series.name is not None:
                body += (f'<{qname(p, "tx")}><{qname(p, "v")}>{escape_xml_text(str(series.name))}'
                         f'</{qname(p, "v")}></{qname(p, "tx")}>')
            if series.categories:
                body += editor._literal_xml(p, 'xVal' if xy else 'cat', 'strLit', series.categories)
            body += editor._literal_xml(p, 'yVal' if xy else 'val', 'numLit',
                                        [format_number(v) for v in series.values])
            parts.append(f'<{qname(p, "ser")}>{body}</{qname(p, "ser")}>')
        return [Splice(pos, pos, ''.join(parts).encode('utf-8'))]

    template = sers[-1]
    template_bytes = stream.raw(template)
    group = stream.parent[template]
    xy = group != -1 and stream.tokens[group].local in XY_GROUPS
    base_scope = stream.scope(stream.parent[template])
    prev = stream.previous_sibling_token(template)
    indent = b''
    if prev is not None and stream.is_whitespace_text(prev):
        indent = stream.buffer[stream.tokens[prev].start:stream.tokens[prev].end]

    clones = []
    for k, series in enumerate(extra):
        clone = TokenStream(template_bytes, fragment=True, base_scope=base_scope)
        ser = clone.roots[0]
        editor = _SeriesEditor(clone, errors)
        editor.rewrite(ser, series, f"series[{first_index + k}]",
                       column_shift=k + 1, renumber=(next_idx + k, next_order + k),
                       xy=xy)
        # Per-series extensions carry unique ids that must not be duplicated
        ext = clone.find_child(ser, C, 'extLst')
        if ext is not None:
            editor.splices.append(_drop_splice(clone, ext))
        clones.append(indent + apply_splices(template_bytes, editor.splices))
    end = stream.element_span(template)[1]
    return [Splice(end, end, b''.join(clones))]


def synchronize_series(buffer: BufferLike, replacements: Sequence[Series],
                       errors: Optional[List[FormatError]] = None) -> bytes:
    """
    Make the chart part hold exactly len(replacements) series.

    Series are matched by position. Matched series get new name, category
    and value data (caches and range formulas), with everything else kept
    byte-for-byte. Surplus originals are removed. Missing ones are cloned
    from the last original series, or built from literal data when the
    chart has none.

    An empty value list empties the value cache; its range formula cannot
    shrink to zero cells, so it keeps its old length and a FormatError for
    the formula is recorded. An empty category list keeps the categories.

    Args:
        buffer: Chart part XML
        replacements: New series, in order
        errors: Receives a FormatError for each field left unchanged

    Raises:
        ValidationError: A replacement value is not a finite number
        StructuralError: Malformed part, or no chart group to add series to
    """
    replacements = list(replacements)
    for index, series in enumerate(replacements):
        if not isinstance(series, Series):
            raise ValidationError(f"series[{index}]", f"expected Series, got {type(series).__name__}")
        series.validate(index)
    if errors is None:
        errors = []

    data = to_bytes(buffer)
    stream = TokenStream(data)
    sers = _series_elements(stream)

    splices: List[Splice] = []
    editor = _SeriesEditor(stream, errors)
    for index, ser in enumerate(sers):
        if index < len(replacements):
            editor.rewrite(ser, replacements[index], f"series[{index}]")
        else:
            splices.append(_drop_splice(stream, ser))
    splices.extend(editor.splices)

    if len(replacements) > len(sers):
        splices.extend(_extension_splices(stream, sers, replacements[len(sers):], len(sers), errors))

    if not splices:
        return data
    result = apply_splices(data, splices)
    check_well_formed(result)
    return result


# ============================================================
# Titles
# ============================================================

def _rich_tx_xml(p: str, text: str, a_prefix: Optional[str]) -> str:
    declare = ''
    if a_prefix is None:
        a_prefix = 'a'
        declare = f' xmlns:a="{A}"'
    a = a_prefix
    return (f'<{qname(p, "tx")}><{qname(p, "rich")}{declare}>'
            f'<{qname(a, "bodyPr")}/><{qname(a, "lstStyle")}/>'
            f'<{qname(a, "p")}><{qname(a, "pPr")}><{qname(a, "defRPr")}/></{qname(a, "pPr")}>'
            f'<{qname(a, "r")}><{qname(a, "t")}>{escape_xml_text(text)}</{qname(a, "t")}></{qname(a, "r")}>'
            f'</{qname(a, "p")}></{qname(p, "rich")}></{qname(p, "tx")}>')


def _title_splices(stream: TokenStream, title: int, text: str) -> List[Splice]:
    p = stream.tokens[title].prefix
    a_prefix = stream.prefix_for(title, A)
    tx = stream.find_child(title, C, 'tx')
    rich = stream.find_child(tx, C, 'rich') if tx is not None else None

    if rich is None:
        new_tx = _rich_tx_xml(p, text, a_prefix).encode('utf-8')
        if tx is not None:
            # Cell-linked title becomes static text
            start, end = stream.element_span(tx)
            return [Splice(start, end, new_tx)]
        if stream.closing[title] == title:
            return [_replace_inner(stream, title, new_tx)]
        pos = stream.inner_span(title)[0]
        return [Splice(pos, pos, new_tx)]

    a = stream.prefix_for(rich, A)
    if a is None:
        raise StructuralError("title rich text has no DrawingML namespace in scope")
    texts = list(stream.iter_elements(A, 't', within=rich))
    if texts:
        splices = [_replace_inner(stream, texts[0], escape_xml_text(text).encode('utf-8'))]
        for extra in texts[1:]:
            start, end = stream.inner_span(extra)
            if start != end:
                splices.append(Splice(start, end, b''))
        return splices

    run = (f'<{qname(a, "r")}><{qname(a, "t")}>{escape_xml_text(text)}'
           f'</{qname(a, "t")}></{qname(a, "r")}>')
    para = stream.find_child(rich, A, 'p')
    if para is None:
        pos = stream.inner_span(rich)[1]
        return [Splice(pos, pos, f'<{qname(a, "p")}>{run}</{qname(a, "p")}>'.encode('utf-8'))]
    if stream.closing[para] == para:
        return [_replace_inner(stream, para, run.encode('utf-8'))]
    end_props = stream.find_child(para, A, 'endParaRPr')
    pos = stream.tokens[end_props].start if end_props is not None else stream.inner_span(para)[1]
    return [Splice(pos, pos, run.encode('utf-8'))]


def _axes(stream: TokenStream, plot_area: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
    if plot_area is None:
        return None, None
    category_axes = (stream.find_children(plot_area, C, 'catAx')
                     + stream.find_children(plot_area, C, 'dateAx'))
    value_axes = stream.find_children(plot_area, C, 'valAx')
    if not category_axes and len(value_axes) >= 2:
        # Scatter charts use two value axes
        return value_axes[0], value_axes[1]
    return (category_axes[0] if category_axes else None,
            value_axes[0] if value_axes else None)


def update_chart_titles(buffer: BufferLike, chart_title: Optional[str] = None,
                        category_axis_title: Optional[str] = None,
                        value_axis_title: Optional[str] = None) -> bytes:
    """
    Set the text of existing chart and axis titles.

    Raises:
        NotFoundError: A requested title element does not exist
    """
    data = to_bytes(buffer)
    stream = TokenStream(data)
    chart = stream.find_descendant(stream.root, C, 'chart')
    plot_area = stream.find_child(chart, C, 'plotArea') if chart is not None else None
    category_axis, value_axis = _axes(stream, plot_area)

    splices: List[Splice] = []
    for label, text, owner in (('chart', chart_title, chart),
                               ('category axis', category_axis_title, category_axis),
                               ('value axis', value_axis_title, value_axis)):
        if text is None:
            continue
        title = stream.find_child(owner, C, 'title') if owner is not None else None
        if title is None:
            raise NotFoundError(f"chart has no {label} title")
        splices.extend(_title_splices(stream, title, str(text)))

    if not splices:
        return data
    result = apply_splices(data, splices)
    check_well_formed(result)
    return result
