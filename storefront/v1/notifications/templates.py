"""
Email template store backed by Jinja2.
"""

from pathlib import Path
from typing import Any

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    Template,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from storefront.config.logging import get_logger
from storefront.v1.core.exceptions import TemplateNotFoundError, TemplateRenderError
from storefront.v1.notifications.formatting import format_amount, format_friendly_date

logger = get_logger(__name__)

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "email_templates"
TEMPLATE_SUFFIX = ".html"


class TemplateStore:
    """Loads named templates (``<name>.html``) from a directory."""

    def __init__(self, templates_dir: str | Path | None = None):
        self.templates_dir = Path(templates_dir or DEFAULT_TEMPLATES_DIR)
        self.environment = Environment(
            loader=FileSystemLoader(self.templates_dir),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )
        self.environment.filters["amount"] = format_amount
        self.environment.filters["friendly_date"] = format_friendly_date

    def load_template(self, name: str) -> Template:
        """Load a template by name, raising TemplateNotFoundError."""
        try:
            return self.environment.get_template(f"{name}{TEMPLATE_SUFFIX}")
        except TemplateNotFound as e:
            logger.error(
                "Email template not found",
                template=name,
                templates_dir=str(self.templates_dir),
            )
            raise TemplateNotFoundError(f"Email template not found: {name}") from e
        except TemplateError as e:
            raise TemplateRenderError(f"Email template {name} is invalid: {e}") from e

    def render(self, name: str, context: dict[str, Any]) -> str:
        """Render a named template with the given context."""
        template = self.load_template(name)
        try:
            return template.render(**context)
        except TemplateError as e:
            logger.error("Email template failed to render", template=name, error=str(e))
            raise TemplateRenderError(f"Email template {name} failed to render: {e}") from e
