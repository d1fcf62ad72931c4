"""Template rendering utilities."""

import logging
from typing import Any
from jinja2 import Environment, TemplateError


logger = logging.getLogger(__name__)

_env = Environment(keep_trailing_newline=True)


def render_template(template_str: str, **context: Any) -> str:
    """Render a Jinja2 template string with given context."""
    try:
        return _env.from_string(template_str).render(**context)
    except TemplateError as e:
        logger.error(f"Template rendering error: {e}")
        raise


def shell_quote_single(command: str) -> str:
    """Escape a command for embedding inside single quotes."""
    return command.replace("'", "'\\''")
