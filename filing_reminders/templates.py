"""
Filing Reminders -- Template Renderer

Turns an email template's structured body plus subject into the resolved
HTML, plain-text and subject stored on a pending reminder.

Pipeline:
    1. Structured body (``{"type": "doc", "content": [...]}``) -> HTML fragment
    2. ``{{placeholder}}`` substitution in the fragment and the subject
    3. Fragment wrapped in the Jinja2 layout ``email_templates/reminder.html``
    4. Plain text derived from the fragment

Placeholders:
    {{client_name}}          Client's company name
    {{deadline}}             31 January 2026
    {{deadline_short}}       31/01/2026
    {{filing_type}}          Filing type or custom schedule name
    {{days_until_deadline}}  Whole days from today to the deadline
    {{accountant_name}}      Practice name

Unknown placeholders are left in place untouched.

Usage:
    from filing_reminders.templates import TemplateRenderer, TemplateContext

    renderer = TemplateRenderer()
    email = renderer.render(template.body, template.subject,
                            TemplateContext(client_name="Acme Ltd",
                                            deadline=date(2026, 1, 1),
                                            filing_type="Corporation Tax Payment"))
    email.html, email.text, email.subject
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError

from .models import TemplateRenderError

_DEFAULT_TEMPLATE_DIR = Path(__file__).resolve().parent / "email_templates"
_LAYOUT_TEMPLATE = "reminder.html"
DEFAULT_ACCOUNTANT_NAME = "Peninsula Accounting"

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

AVAILABLE_PLACEHOLDERS: list[tuple[str, str]] = [
    ("client_name", "Client's company or trading name"),
    ("deadline", "Deadline date in long format (e.g. 31 January 2026)"),
    ("deadline_short", "Deadline date in short format (e.g. 31/01/2026)"),
    ("filing_type", "Type of filing (e.g. Corporation Tax Payment)"),
    ("days_until_deadline", "Number of days remaining until the deadline"),
    ("accountant_name", "Practice name"),
]


# ---------------------------------------------------------------------------
# Context and result
# ---------------------------------------------------------------------------

@dataclass
class TemplateContext:
    """Values available to placeholders.  Empty fields get fallbacks at render time."""
    client_name: str = ""
    deadline: Optional[date] = None
    filing_type: str = ""
    accountant_name: str = ""


@dataclass
class RenderedEmail:
    html: str
    text: str
    subject: str


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def format_deadline(d: date) -> str:
    """Long UK date, e.g. ``31 January 2026``."""
    return d.strftime("%d %B %Y")


def format_deadline_short(d: date) -> str:
    """Short UK date, e.g. ``31/01/2026``."""
    return d.strftime("%d/%m/%Y")


def substitute_variables(
    text: str,
    context: TemplateContext,
    today: Optional[date] = None,
    escape: Callable[[str], str] | None = None,
) -> str:
    """Replace ``{{name}}`` tokens in ``text`` from ``context``.

    Args:
        text: Template string.
        context: Placeholder values.  ``deadline`` must be set.
        today: Reference for ``days_until_deadline``.  Defaults to today.
        escape: Optional function applied to every substituted value
            (``html.escape`` when substituting into HTML).

    Returns:
        The text with known tokens replaced and unknown tokens preserved.
    """
    today = today or date.today()
    deadline = context.deadline or today
    variables = {
        "client_name": context.client_name,
        "deadline": format_deadline(deadline),
        "deadline_short": format_deadline_short(deadline),
        "filing_type": context.filing_type,
        "days_until_deadline": str((deadline - today).days),
        "accountant_name": context.accountant_name or DEFAULT_ACCOUNTANT_NAME,
    }

    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return escape(value) if escape else value

    return _PLACEHOLDER_RE.sub(_replace, text)


# ---------------------------------------------------------------------------
# Structured body -> HTML
# ---------------------------------------------------------------------------

_BLOCK_TAGS = {
    "paragraph": "p",
    "bulletList": "ul",
    "orderedList": "ol",
    "listItem": "li",
    "blockquote": "blockquote",
}

_MARK_TAGS = {
    "bold": "strong",
    "italic": "em",
    "underline": "u",
    "strike": "s",
}


def _attrs(item: dict[str, Any]) -> dict[str, Any]:
    attrs = item.get("attrs")
    if attrs is None:
        return {}
    if not isinstance(attrs, dict):
        raise TemplateRenderError(f"{item.get('type')!r} attrs must be an object, got {attrs!r}")
    return attrs


def _render_marks(text: str, marks: Any) -> str:
    if marks is None:
        return text
    if not isinstance(marks, list):
        raise TemplateRenderError("Text marks must be a list")
    for mark in marks:
        if not isinstance(mark, dict) or "type" not in mark:
            raise TemplateRenderError(f"Malformed mark: {mark!r}")
        mark_type = mark["type"]
        if mark_type in _MARK_TAGS:
            tag = _MARK_TAGS[mark_type]
            text = f"<{tag}>{text}</{tag}>"
        elif mark_type == "link":
            href = _attrs(mark).get("href")
            if not isinstance(href, str) or not href:
                raise TemplateRenderError("Link mark without an href")
            text = f'<a href="{html.escape(href, quote=True)}">{text}</a>'
        else:
            raise TemplateRenderError(f"Unknown mark type: {mark_type!r}")
    return text


def _render_children(node: dict[str, Any]) -> str:
    content = node.get("content", [])
    if not isinstance(content, list):
        raise TemplateRenderError(f"Node {node.get('type')!r} has non-list content")
    return "".join(_render_node(child) for child in content)


def _render_node(node: Any) -> str:
    if not isinstance(node, dict) or not isinstance(node.get("type"), str):
        raise TemplateRenderError(f"Malformed node: {node!r}")

    node_type = node["type"]

    if node_type == "text":
        text = node.get("text")
        if not isinstance(text, str):
            raise TemplateRenderError("Text node without a string 'text' field")
        return _render_marks(html.escape(text, quote=False), node.get("marks"))

    if node_type == "placeholder":
        placeholder_id = _attrs(node).get("id")
        if not isinstance(placeholder_id, str) or not placeholder_id:
            raise TemplateRenderError("Placeholder node without an id")
        return (
            f'<span data-type="placeholder" data-id="{html.escape(placeholder_id)}">'
            f"{{{{{placeholder_id}}}}}</span>"
        )

    if node_type == "hardBreak":
        return "<br>"

    if node_type == "heading":
        level = _attrs(node).get("level", 1)
        if not isinstance(level, int) or not 1 <= level <= 6:
            raise TemplateRenderError(f"Invalid heading level: {level!r}")
        return f"<h{level}>{_render_children(node)}</h{level}>"

    if node_type in _BLOCK_TAGS:
        tag = _BLOCK_TAGS[node_type]
        return f"<{tag}>{_render_children(node)}</{tag}>"

    raise TemplateRenderError(f"Unknown node type: {node_type!r}")


def body_to_html(body: Any) -> str:
    """Convert a structured template body into an HTML fragment.

    Raises:
        TemplateRenderError: The document or any node in it is malformed.
    """
    if not isinstance(body, dict) or body.get("type") != "doc":
        raise TemplateRenderError("Template body must be a document with type 'doc'")
    return _render_children(body)


# ---------------------------------------------------------------------------
# HTML -> plain text
# ---------------------------------------------------------------------------

def html_to_plaintext(html_content: str) -> str:
    """Convert a rendered HTML body to a plain-text alternative.

    Strips tags, keeps paragraph and line breaks, and turns list items
    into dashes and links into ``text (url)``.
    """
    text = html_content

    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</h[1-6]>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)
    text = re.sub(r"</?(?:ul|ol)[^>]*>", "\n", text, flags=re.IGNORECASE)

    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------

class TemplateRenderer:
    """Renders template bodies into the practice's branded email layout.

    Attributes:
        env: Jinja2 Environment over ``template_dir``.
        accountant_name: Fallback practice name for ``{{accountant_name}}``.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        accountant_name: str = DEFAULT_ACCOUNTANT_NAME,
    ) -> None:
        self.template_dir = Path(template_dir) if template_dir else _DEFAULT_TEMPLATE_DIR
        self.accountant_name = accountant_name
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # the body fragment is already HTML
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(
        self,
        body: dict[str, Any],
        subject: str,
        context: TemplateContext,
        today: Optional[date] = None,
    ) -> RenderedEmail:
        """Resolve one email.

        Raises:
            TemplateRenderError: The body is malformed or the layout fails.
        """
        today = today or date.today()
        safe_context = TemplateContext(
            client_name=context.client_name or "[Client Name]",
            deadline=context.deadline or today,
            filing_type=context.filing_type or "[Filing Type]",
            accountant_name=context.accountant_name or self.accountant_name,
        )

        fragment = substitute_variables(
            body_to_html(body), safe_context, today=today, escape=html.escape
        )
        resolved_subject = substitute_variables(subject, safe_context, today=today)

        try:
            layout = self.env.get_template(_LAYOUT_TEMPLATE)
            full_html = layout.render(
                subject=resolved_subject,
                html_body=fragment,
                accountant_name=safe_context.accountant_name,
            )
        except TemplateError as exc:
            raise TemplateRenderError(f"Email layout failed to render: {exc}") from exc

        return RenderedEmail(
            html=full_html,
            text=html_to_plaintext(fragment),
            subject=resolved_subject,
        )
