"""Prompt rendering utilities."""

from functools import lru_cache
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    select_autoescape,
)

# Types that Jinja2 can render natively in our templates.
TemplateContextValue = str | int | bool | list[str] | None

REVIEW_TEMPLATE = "review.j2"
FIX_OPINION_TEMPLATE = "fix_opinion.j2"
FIX_EXECUTE_TEMPLATE = "fix_execute.j2"
REFACTOR_FIX_OPINION_TEMPLATE = "refactor_fix_opinion.j2"
REFACTOR_FIX_EXECUTE_TEMPLATE = "refactor_fix_execute.j2"
SELF_REVIEW_TEMPLATE = "self_review.j2"


def refactor_template(scope: str) -> str:
    """Return the refactoring review template for ``scope``."""
    return f"refactor_{scope}.j2"


@lru_cache(maxsize=4)
def _prompt_environment(prompts_dir: Path | None = None) -> Environment:
    """Build and cache the Jinja environment for prompt templates.

    Templates in ``prompts_dir`` shadow the bundled ones of the same name.
    Autoescaping stays limited to HTML templates; the prompts are plain text
    and escaping would corrupt them.
    """
    loader: BaseLoader = PackageLoader("review_loop", "templates")
    if prompts_dir is not None:
        loader = ChoiceLoader([FileSystemLoader(str(prompts_dir)), loader])

    return Environment(
        loader=loader,
        autoescape=select_autoescape(enabled_extensions=("html", "htm")),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined,
    )


def render_prompt(
    template_name: str,
    *,
    prompts_dir: Path | None = None,
    **context: TemplateContextValue,
) -> str:
    """Render a prompt template.

    Args:
        template_name: Template filename (e.g., "review.j2")
        prompts_dir: Optional directory of override templates
        **context: Template variables (str, int, bool, or None)

    Returns:
        Rendered prompt text

    """
    template = _prompt_environment(prompts_dir).get_template(template_name)
    return template.render(**context).strip()
