"""Object key templating.

Keys use printf-style mapping templates (default ``"%(id)s.%(ext)s"``)
substituted against the item's metadata record, with ``ext`` overridden by the
artifact being written. Every placeholder must resolve; a template that names a
field the record lacks is an error rather than a silently odd key.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from ..errors import TemplateError

__all__ = ["render_key", "template_fields"]

_FIELD_RE = re.compile(r"%\((\w+)\)")


def template_fields(template: str) -> list[str]:
    """Return the field names a template references, in order."""
    return _FIELD_RE.findall(template)


def render_key(template: str, metadata: Mapping[str, Any], ext: Optional[str] = None) -> str:
    """Substitute ``metadata`` (and ``ext``) into ``template``.

    ``None`` values render as empty strings.

    Raises:
        TemplateError: If a referenced field is missing or the template is malformed.

    Examples:
        >>> render_key("%(id)s.%(ext)s", {"id": "dQw4w9WgXcQ"}, "webm")
        'dQw4w9WgXcQ.webm'
    """
    values = {key: ("" if value is None else value) for key, value in metadata.items()}
    if ext is not None:
        values["ext"] = ext
    missing = [name for name in template_fields(template) if name not in values]
    if missing:
        raise TemplateError(
            f"key template {template!r} references fields missing from metadata: "
            f"{', '.join(sorted(set(missing)))}",
            template=template,
        )
    try:
        return template % values
    except (TypeError, ValueError, KeyError) as e:
        raise TemplateError(f"invalid key template {template!r}: {e}", template=template) from e
