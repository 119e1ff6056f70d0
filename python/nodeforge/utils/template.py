"""
nodeforge/utils/template.py

Renders the cloud-init bootstrap template.

Placeholders have the form ${UPPER_SNAKE_CASE}. A placeholder without a value
in the context renders as an empty string; nothing raises. The template is
trusted input, so values are inserted verbatim without quoting.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import List, Mapping, Optional, Union

import aiofiles

from nodeforge.errors import TemplateError

PLACEHOLDER_RE = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_TEMPLATE_PATH = (
    Path(__file__).resolve().parent.parent / "templates" / "cloud-config.yaml"
)


def render(template: str, context: Mapping[str, str]) -> str:
    """Replace every ${NAME} in `template` with `context[NAME]`, or "" if absent."""
    return PLACEHOLDER_RE.sub(lambda m: context.get(m.group(1), ""), template)


def placeholders(template: str) -> List[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in PLACEHOLDER_RE.findall(template):
        if name not in seen:
            seen.append(name)
    return seen


def missing_placeholders(template: str, context: Mapping[str, str]) -> List[str]:
    """Placeholder names that `render` would replace with an empty string."""
    return [name for name in placeholders(template) if name not in context]


async def load_template(path: Optional[Union[str, Path]] = None) -> str:
    """Read a bootstrap template, defaulting to the packaged cloud-config.yaml.

    Raises:
        TemplateError: If the file cannot be read.
    """
    target = path or DEFAULT_TEMPLATE_PATH
    try:
        async with aiofiles.open(target, "r", encoding="utf-8") as f:
            return await f.read()
    except OSError as exc:
        raise TemplateError(f"Cannot read bootstrap template '{target}': {exc}") from exc
