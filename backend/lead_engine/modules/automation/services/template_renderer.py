"""
Template Renderer
Pure rendering of {{variable}} placeholders. No I/O.

A missing (or blank) binding fails the render instead of emitting a message
with a hole in it; the dispatcher treats that as a terminal step failure.
"""
import re
from typing import Dict, Iterable, List, Optional

from lead_engine.shared.utils.exceptions import MissingVariableError, RenderError

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def extract_placeholders(content: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in PLACEHOLDER_PATTERN.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


def render_template(
    content: str,
    bindings: Dict[str, str],
    declared_variables: Optional[Iterable[str]] = None
) -> str:
    """
    Render template content with variable bindings.

    Args:
        content: Raw template text with {{name}} placeholders
        bindings: variable -> value
        declared_variables: Variables the template declares; each must be bound
            even if the text does not (yet) use it

    Returns:
        Rendered text

    Raises:
        MissingVariableError: A placeholder or declared variable has no non-blank binding
        RenderError: Empty template, or text that renders to nothing

    Example:
        >>> render_template("Hi {{name}}!", {"name": "Rahul"})
        'Hi Rahul!'
    """
    if content is None or not content.strip():
        raise RenderError("Template content is empty")

    def _value(name: str) -> str:
        value = bindings.get(name)
        if value is None or not str(value).strip():
            raise MissingVariableError(name)
        return str(value)

    for name in declared_variables or []:
        _value(name)

    rendered = PLACEHOLDER_PATTERN.sub(lambda m: _value(m.group(1)), content)

    if not rendered.strip():
        raise RenderError("Template rendered to empty text")
    return rendered
