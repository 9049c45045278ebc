#!/usr/bin/env python3
"""
ABOUTME: XML utility functions for document patching
ABOUTME: Provides sanitization and escaping of caller text for XML parts
"""

# Keep: \t (0x09), \n (0x0A), \r (0x0D)
# Remove: 0x00-0x08, 0x0B, 0x0C, 0x0E-0x1F, lone surrogates (0xD800-0xDFFF), 0xFFFE, 0xFFFF
_ILLEGAL_CHARS_TABLE = str.maketrans('', '', ''.join(
    [chr(c) for c in range(0x20) if c not in (0x09, 0x0A, 0x0D)]
    + [chr(c) for c in range(0xD800, 0xE000)]
    + [chr(0xFFFE), chr(0xFFFF)]
))


def sanitize_xml_string(text: str) -> str:
    """
    Remove characters that are illegal in XML 1.0.

    XML 1.0 allows: #x9 (tab), #xA (LF), #xD (CR), and #x20-#xD7FF, #xE000-#xFFFD, #x10000-#x10FFFF
    This function removes C0 control characters other than tab/LF/CR, unpaired
    surrogates (which cannot be encoded as UTF-8 either) and U+FFFE/U+FFFF.

    Args:
        text: Text that may contain illegal characters

    Returns:
        Sanitized text safe for XML. Returns input unchanged if not a non-empty string.
    """
    if not text or not isinstance(text, str):
        return text
    return text.translate(_ILLEGAL_CHARS_TABLE)


def escape_xml_text(text: str) -> str:
    """
    Escape text for use as element content.

    Only '&', '<' and '>' are replaced, which is what Word itself writes
    into <w:t> elements. Illegal control characters are removed first.
    """
    text = sanitize_xml_string(text or '')
    return (text
            .replace('&', '&amp;')
            .replace('<', '&lt;')
            .replace('>', '&gt;'))


def escape_xml_attr(text: str) -> str:
    """Escape text for use inside a double- or single-quoted attribute value."""
    return (escape_xml_text(text)
            .replace('"', '&quot;')
            .replace("'", '&apos;'))
