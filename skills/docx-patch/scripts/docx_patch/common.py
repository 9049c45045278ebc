#!/usr/bin/env python3
"""
ABOUTME: Shared constants, data classes and exceptions for the patch engine
ABOUTME: Everything here is free of buffer-scanning logic
"""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union


# ============================================================
# Constants
# ============================================================

NS = {
    'w': 'http://schemas.openxmlformats.org/wordprocessingml/2006/main',
    'w14': 'http://schemas.microsoft.com/office/word/2010/wordml',
    'r': 'http://schemas.openxmlformats.org/officeDocument/2006/relationships',
    'wp': 'http://schemas.openxmlformats.org/drawingml/2006/wordprocessingDrawing',
    'a': 'http://schemas.openxmlformats.org/drawingml/2006/main',
    'c': 'http://schemas.openxmlformats.org/drawingml/2006/chart',
    'xml': 'http://www.w3.org/XML/1998/namespace',
}

CHART_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.drawingml.chart+xml"
CHART_REL_TYPE = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/chart"

# Word reserves these prefixes for generated bookmarks (TOC, hyperlinks, ...)
RESERVED_BOOKMARK_PREFIXES = ('_Toc', '_Hlt', '_Ref', '_GoBack')
BOOKMARK_NAME_MAX_LEN = 40
BOOKMARK_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_]*$')

SECTION_BREAK_TYPES = ('nextPage', 'continuous', 'evenPage', 'oddPage')

HEADING_STYLES = {
    1: 'Heading1',
    2: 'Heading2',
    3: 'Heading3',
}

MAX_LIST_LEVEL = 8

BufferLike = Union[bytes, bytearray, str]


# ============================================================
# Exceptions
# ============================================================

class PatchError(Exception):
    """Base class for every error raised by the patch engine"""


class ValidationError(PatchError, ValueError):
    """Malformed caller input, rejected before the buffer is touched"""

    def __init__(self, field_name: str, message: str):
        self.field = field_name
        super().__init__(f"{field_name}: {message}")


class NotFoundError(PatchError, LookupError):
    """Anchor, phrase or target element is absent; the buffer is unchanged"""


class StructuralError(PatchError):
    """Host buffer is malformed or lacks required scaffolding"""


class FormatError(PatchError, ValueError):
    """A single field (formula, cached value) could not be parsed"""

    def __init__(self, field_name: str, message: str):
        self.field = field_name
        super().__init__(f"{field_name}: {message}")


# ============================================================
# Data Classes
# ============================================================

class InsertTarget(Enum):
    BODY_START = 'start'
    BODY_END = 'end'
    AFTER_ANCHOR = 'after'
    BEFORE_ANCHOR = 'before'

    @classmethod
    def parse(cls, value: Any) -> 'InsertTarget':
        """Accept an InsertTarget, its value ('start', 'after', ...) or its name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for target in cls:
                if key.lower() == target.value or key.upper() == target.name:
                    return target
        raise ValidationError('position', f"unknown insert position: {value!r}")

    @property
    def needs_anchor(self) -> bool:
        return self in (InsertTarget.AFTER_ANCHOR, InsertTarget.BEFORE_ANCHOR)


@dataclass(frozen=True)
class AnchorMatch:
    """Location of an anchor phrase; valid only for the buffer it came from"""
    start_offset: int            # First byte of the matched text
    end_offset: int              # One past the last byte of the matched text
    enclosing_start: int         # First byte of the enclosing <w:p>
    enclosing_end: int           # One past the closing </w:p>
    run_spans: Tuple[Tuple[int, int], ...] = ()  # Covering <w:r> elements


@dataclass
class InsertionSpec:
    """Where and what to insert"""
    target: InsertTarget
    payload: Union[str, bytes]
    anchor: Optional[str] = None

    def __post_init__(self):
        self.target = InsertTarget.parse(self.target)


@dataclass
class MarkerPair:
    """Start/end fragments placed around the runs covering a phrase"""
    start: Union[str, bytes]
    end: Union[str, bytes]


@dataclass
class Series:
    """One chart data series, matched to the original by position"""
    name: Optional[str]
    categories: List[str] = field(default_factory=list)
    values: List[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], categories: Optional[Sequence[Any]] = None,
                  field_name: str = 'series') -> 'Series':
        """
        Build from a JSONL dict; chart-level categories fill in when absent.

        A null 'categories' or 'values' counts as absent.
        """
        cats = data.get('categories')
        if cats is None:
            cats = categories if categories is not None else []
        values = data.get('values')
        if values is None:
            values = []
        if not isinstance(cats, (list, tuple)):
            raise ValidationError(f"{field_name}.categories", f"must be an array, got {cats!r}")
        if not isinstance(values, (list, tuple)):
            raise ValidationError(f"{field_name}.values", f"must be an array, got {values!r}")
        name = data.get('name')
        return cls(
            name=None if name is None else str(name),
            categories=[str(c) for c in cats],
            values=list(values),
        )

    def validate(self, index: int):
        if not isinstance(self.values, (list, tuple)):
            raise ValidationError(f"series[{index}].values", "must be a list")
        for pos, value in enumerate(self.values):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"series[{index}].values[{pos}]",
                                      f"not a number: {value!r}")
            if not math.isfinite(value):
                raise ValidationError(f"series[{index}].values[{pos}]",
                                      f"not a finite number: {value!r}")


class IdentifierKind(Enum):
    BOOKMARK = 'bookmark'
    NUMBERING = 'numbering'
    ABSTRACT_NUMBERING = 'abstract_numbering'
    RELATIONSHIP = 'relationship'
    DRAWING = 'drawing'
    COMMENT = 'comment'
    REVISION = 'revision'


@dataclass(frozen=True)
class ListNumbering:
    """Numbering instance ids managed by this tool inside numbering.xml"""
    bullet_num_id: int
    numbered_num_id: int

    def num_id_for(self, list_type: str) -> int:
        if list_type == 'bullet':
            return self.bullet_num_id
        if list_type == 'numbered':
            return self.numbered_num_id
        raise ValidationError('list_type', f"expected 'bullet' or 'numbered', got {list_type!r}")


@dataclass
class PatchItem:
    """Single patch item from JSONL input"""
    action: str                  # paragraph | heading | page_break | ... | chart
    position: str = 'end'        # start | end | after | before
    anchor: str = ''             # Anchor phrase for after/before
    text: str = ''
    data: Dict[str, Any] = field(default_factory=dict)  # Action-specific fields

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PatchItem':
        action = (data.get('action') or '').strip()
        if not action:
            raise ValidationError('action', "patch item has no action")
        return cls(
            action=action,
            position=data.get('position', 'end') or 'end',
            anchor=data.get('anchor', '') or '',
            text=data.get('text', '') or '',
            data=dict(data),
        )


@dataclass
class PatchResult:
    """Result of processing a patch item"""
    success: bool
    item: PatchItem
    error_message: Optional[str] = None
    warning: bool = False  # Applied, but some field was left unchanged


# ============================================================
# Helper Functions
# ============================================================

def to_bytes(buffer: BufferLike) -> bytes:
    """Normalize a caller buffer to bytes (str is encoded as UTF-8)."""
    if isinstance(buffer, str):
        try:
            return buffer.encode('utf-8')
        except UnicodeEncodeError as exc:
            raise ValidationError('buffer', f"text is not valid Unicode: {exc.reason}") from exc
    if isinstance(buffer, (bytes, bytearray)):
        return bytes(buffer)
    raise ValidationError('buffer', f"expected bytes or str, got {type(buffer).__name__}")


def format_text_preview(text: str, max_len: int = 30) -> str:
    """
    Format text for log output: remove newlines and truncate.

    Args:
        text: Text to format
        max_len: Maximum length before truncation

    Returns:
        Clean, truncated text with "..." suffix if truncated
    """
    clean = ' '.join((text or '').split())
    if len(clean) > max_len:
        return clean[:max_len] + "..."
    return clean


def validate_bookmark_name(name: str) -> str:
    """
    Validate a bookmark name the way Word does.

    Rules:
    - Must start with a letter
    - Letters, digits and underscores only
    - At most 40 characters
    - Must not use a reserved prefix (_Toc, _Hlt, _Ref, _GoBack)

    Returns:
        The name, unchanged

    Raises:
        ValidationError: If any rule is violated
    """
    if not name:
        raise ValidationError('name', "bookmark name cannot be empty")
    if len(name) > BOOKMARK_NAME_MAX_LEN:
        raise ValidationError('name', f"bookmark name must be {BOOKMARK_NAME_MAX_LEN} characters or less")
    for reserved in RESERVED_BOOKMARK_PREFIXES:
        if name.startswith(reserved):
            raise ValidationError('name', f"bookmark name cannot start with reserved prefix '{reserved}'")
    if not name[0].isascii() or not name[0].isalpha():
        raise ValidationError('name', "bookmark name must start with a letter")
    if not BOOKMARK_NAME_PATTERN.match(name):
        raise ValidationError('name', "bookmark name can only contain letters, digits, and underscores")
    return name


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run to a single space and strip the ends."""
    return ' '.join(text.split())
