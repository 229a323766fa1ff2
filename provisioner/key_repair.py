# provisioner/key_repair.py
"""
PEM normalisation for private keys that were flattened or re-wrapped in transit
(copied through web forms, JSON blobs, environment variables).
"""
import re

PEM_LINE_WIDTH = 64

_HEADER = re.compile(r"-----BEGIN [^\n-]+-----")
_FOOTER = re.compile(r"-----END [^\n-]+-----")
_WHITESPACE = re.compile(r"\s+")


def has_pem_markers(text: str | None) -> bool:
    if not text:
        return False
    return bool(_HEADER.search(text)) and bool(_FOOTER.search(text))


def is_malformed(text: str | None) -> bool:
    """
    A key is malformed when both PEM markers are present but the body was never
    split into PEM-width lines (two or fewer non-blank lines in total).
    """
    if not has_pem_markers(text):
        return False
    lines = [line for line in text.splitlines() if line.strip()]
    return len(lines) <= 2


def repair(text: str | None) -> str | None:
    """
    Re-emit a PEM document as header, 64-character body lines and footer.

    Returns None when the header or footer cannot be found. Idempotent.
    """
    if not text:
        return None
    header = _HEADER.search(text)
    if not header:
        return None
    footer = _FOOTER.search(text, header.end())
    if not footer:
        return None

    body = _WHITESPACE.sub("", text[header.end():footer.start()])
    lines = [body[i:i + PEM_LINE_WIDTH] for i in range(0, len(body), PEM_LINE_WIDTH)]
    return "\n".join([header.group(0), *lines, footer.group(0)])


def normalize(text: str) -> str:
    """Repair ``text`` if it is malformed, otherwise return it unchanged."""
    if is_malformed(text):
        fixed = repair(text)
        if fixed is not None:
            return fixed
    return text
