from typing import Any

from fastapi import Request, Response
from fastapi.templating import Jinja2Templates

from .constants import TEMPLATES_DIR, VERSION

templates = Jinja2Templates(directory=TEMPLATES_DIR)


def render(request: Request, template: str, context: dict[str, Any]) -> Response:
    """Render a page template with global context injected."""
    context["version"] = VERSION
    return templates.TemplateResponse(request, template, context)


def render_text(template: str, context: dict[str, Any]) -> str:
    """Render a template outside of a request (email bodies, subjects)."""
    return templates.env.get_template(template).render(**context).strip()
