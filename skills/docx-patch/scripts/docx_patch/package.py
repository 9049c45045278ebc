"""
ABOUTME: Reads and writes XML part buffers of a .docx through python-docx's OPC layer
ABOUTME: The patch engine itself only ever sees bytes
"""

import re
from pathlib import Path
from typing import Dict, List, Optional, Union

from docx import Document
from docx.opc.constants import CONTENT_TYPE as CT
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.opc.packuri import PackURI
from docx.opc.part import Part, XmlPart
from docx.oxml.parser import parse_xml

from .common import NS, NotFoundError


EMPTY_NUMBERING_XML = (
    f'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    f'<w:numbering xmlns:w="{NS["w"]}"/>'
).encode('utf-8')

_CHART_NUMBER = re.compile(r'(\d+)\.xml$')


def _set_blob(part: Part, blob: bytes):
    if isinstance(part, XmlPart):
        part._element = parse_xml(blob)
    else:
        part._blob = blob


class DocxPackage:
    """
    A .docx opened with python-docx, exposing parts as raw XML bytes.

    Args:
        path: Source .docx file
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.doc = Document(str(self.path))

    @property
    def main_part(self) -> Part:
        return self.doc.part

    def _parts(self) -> Dict[str, Part]:
        return {str(part.partname): part for part in self.main_part.package.iter_parts()}

    def _get_part(self, partname: str) -> Part:
        try:
            return self._parts()[partname]
        except KeyError:
            raise NotFoundError(f"package has no part {partname}") from None

    def read_part(self, partname: str) -> bytes:
        return self._get_part(partname).blob

    def write_part(self, partname: str, blob: bytes):
        _set_blob(self._get_part(partname), blob)

    @property
    def document_xml(self) -> bytes:
        return self.main_part.blob

    @document_xml.setter
    def document_xml(self, blob: bytes):
        _set_blob(self.main_part, blob)

    def chart_partnames(self) -> List[str]:
        """Charts related to the main document, ordered by chart number."""
        names = [
            str(rel.target_part.partname)
            for rel in self.main_part.rels.values()
            if rel.reltype == RT.CHART and not rel.is_external
        ]

        def chart_number(name: str):
            m = _CHART_NUMBER.search(name)
            return (int(m.group(1)) if m else 0, name)

        return sorted(set(names), key=chart_number)

    def _numbering_part(self) -> Optional[Part]:
        try:
            return self.main_part.part_related_by(RT.NUMBERING)
        except KeyError:
            return None

    @property
    def numbering_xml(self) -> bytes:
        """numbering.xml, or an empty numbering root when the document has none."""
        part = self._numbering_part()
        return EMPTY_NUMBERING_XML if part is None else part.blob

    @numbering_xml.setter
    def numbering_xml(self, blob: bytes):
        part = self._numbering_part()
        if part is None:
            # Created on first write only
            part = Part(
                PackURI('/word/numbering.xml'),
                CT.WML_NUMBERING,
                blob,
                self.main_part.package,
            )
            self.main_part.relate_to(part, RT.NUMBERING)
            return
        _set_blob(part, blob)

    def save(self, path: Union[str, Path]):
        self.doc.save(str(path))
