"""Stable identities that survive a round trip through the diagram document.

Every element the tool writes into a diagram carries an identity tag of the
form ``#AnalyzerID:<32 hex chars>#`` in its description. Reading the diagram
back recovers the identity from the tag; elements without a tag were drawn by
a user and get an identity derived from their origin file and local name.
"""

import hashlib
import re
from typing import Optional

ID_LENGTH = 32

_TAG_PATTERN = re.compile(r'#AnalyzerID:([0-9a-fA-F]{%d})#' % ID_LENGTH)


def generate_id(file_path: str, local_name: str) -> str:
    """Derive a 32 hex character id from the origin file and a name local to it."""
    digest = hashlib.sha256((file_path + local_name).encode('utf-8')).hexdigest()
    return digest[:ID_LENGTH]


def embed_tag(element_id: str) -> str:
    return f'#AnalyzerID:{element_id}#'


def extract_tag(description: Optional[str]) -> str:
    """Return the id of the first identity tag in ``description``, or ''."""
    if not description:
        return ''
    match = _TAG_PATTERN.search(description)
    return match.group(1) if match else ''


def has_tag(description: Optional[str]) -> bool:
    return bool(extract_tag(description))


def resolve_identity(description: Optional[str], file_path: str, local_name: str) -> tuple[str, bool]:
    """Return ``(id, is_generated_by_user)`` for an element read from ``file_path``.

    Tagged elements keep their recorded id. Untagged elements were created
    directly in that file and receive a freshly derived id.
    """
    tagged = extract_tag(description)
    if tagged:
        return tagged, False
    return generate_id(file_path, local_name), True


def append_tag(description: Optional[str], element_id: str) -> str:
    """Add the identity tag to a description unless one is already present."""
    if has_tag(description):
        return description
    tag = embed_tag(element_id)
    if not description:
        return tag
    return f'{description}\n{tag}'
