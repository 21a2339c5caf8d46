"""Alert rendering."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = Path(__file__).parent / "templates"
ENV = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(enabled_extensions=("html",)),
)


def render_alert(kind: str, context: dict[str, Any]) -> tuple[str, str]:
    template = ENV.get_template(f"{kind}.html")
    html = template.render(**context)
    subject = context.get("subject", "Rotation alert")
    return subject, html
