"""Request template rendering.

A template is a JSON-like tree.  Leaf strings are rendered in two passes:

1. Whole-value: a leaf that is *exactly* one of the placeholders below is
   replaced by the typed context value (a list stays a list, a float stays a
   float). A mapping entry whose placeholder has no value is left out.
2. Textual: otherwise every placeholder occurring in the string is replaced
   by its string form, and a result of ``"true"``/``"false"`` becomes a bool.

Placeholders: ``{{messages[]}}``, ``{{messages:role}}``,
``{{messages:content}}``, ``{{model}}``, ``{{temperature}}``,
``{{max_tokens}}``, ``{{stream}}``.
"""

from __future__ import annotations

from typing import Any, Callable

from open_completions.types import RenderingContext

_WHOLE_VALUE: dict[str, Callable[[RenderingContext], Any]] = {
    "{{messages[]}}": lambda ctx: [dict(m) for m in ctx.messages],
    "{{messages:role}}": lambda ctx: [m.get("role") for m in ctx.messages],
    "{{messages:content}}": lambda ctx: [m.get("content") for m in ctx.messages],
    "{{model}}": lambda ctx: ctx.model,
    "{{temperature}}": lambda ctx: ctx.temperature,
    "{{max_tokens}}": lambda ctx: ctx.max_tokens,
    "{{stream}}": lambda ctx: ctx.stream,
}


def stringify(value: Any) -> str:
    """String form used for textual substitution."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _textual_replacements(ctx: RenderingContext) -> dict[str, str]:
    return {
        "{{model}}": stringify(ctx.model),
        "{{temperature}}": stringify(ctx.temperature),
        "{{max_tokens}}": stringify(ctx.max_tokens),
        "{{stream}}": stringify(bool(ctx.stream)),
        "{{messages:role}}": "\n".join(stringify(m.get("role")) for m in ctx.messages),
        "{{messages:content}}": "\n".join(
            stringify(m.get("content")) for m in ctx.messages
        ),
    }


def render_string(value: str, ctx: RenderingContext) -> Any:
    if value in _WHOLE_VALUE:
        return _WHOLE_VALUE[value](ctx)
    rendered = value
    for placeholder, replacement in _textual_replacements(ctx).items():
        if placeholder in rendered:
            rendered = rendered.replace(placeholder, replacement)
    if rendered == "true":
        return True
    if rendered == "false":
        return False
    return rendered


def render_template(value: Any, ctx: RenderingContext) -> Any:
    """Render a template tree; non-string leaves pass through unchanged."""
    if isinstance(value, str):
        return render_string(value, ctx)
    if isinstance(value, list):
        return [render_template(item, ctx) for item in value]
    if isinstance(value, dict):
        rendered: dict[str, Any] = {}
        for key, child in value.items():
            result = render_template(child, ctx)
            if result is None and isinstance(child, str) and child in _WHOLE_VALUE:
                # an unset placeholder drops its key; list items stay null
                continue
            rendered[key] = result
        return rendered
    return value
