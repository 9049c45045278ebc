"""Structural patch engine for DOCX XML parts."""

from .anchor import document_text, find_anchors, locate_anchor
from .common import (
    AnchorMatch,
    FormatError,
    IdentifierKind,
    InsertionSpec,
    InsertTarget,
    ListNumbering,
    MarkerPair,
    NotFoundError,
    PatchError,
    PatchItem,
    PatchResult,
    Series,
    StructuralError,
    ValidationError,
)
from .identifiers import (
    IdentifierAllocator,
    ensure_list_numbering,
    next_identifier,
    next_numbering_pair,
)
from .insertion import insert_node, plan_insertion, wrap_range
from .package import DocxPackage
from .patcher import DocxPatcher
from .series import (
    count_series,
    synchronize_series,
    update_chart_titles,
    update_formula_range,
)

__all__ = [
    "AnchorMatch",
    "DocxPackage",
    "DocxPatcher",
    "FormatError",
    "IdentifierAllocator",
    "IdentifierKind",
    "InsertTarget",
    "InsertionSpec",
    "ListNumbering",
    "MarkerPair",
    "NotFoundError",
    "PatchError",
    "PatchItem",
    "PatchResult",
    "Series",
    "StructuralError",
    "ValidationError",
    "count_series",
    "document_text",
    "ensure_list_numbering",
    "find_anchors",
    "insert_node",
    "locate_anchor",
    "next_identifier",
    "next_numbering_pair",
    "plan_insertion",
    "synchronize_series",
    "update_chart_titles",
    "update_formula_range",
    "wrap_range",
]
