"""Fill-in-the-middle prompt construction."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from jinja2 import Environment, StrictUndefined, TemplateError as JinjaTemplateError

from .config import DEFAULT_PROMPT_TEMPLATE
from .errors import TemplateError
from .log import component_logger

DEFAULT_SYSTEM_TEMPLATE = (
    "You are an expert AI programming assistant for {{ language }}.\n"
    "Your goal is to perform Fill-in-the-Middle (FIM) code completion. "
    "Complete only the code that fits between the given prefix and suffix.\n"
    "Do not add explanations, comments, or markdown. "
    "Do not change code outside the specified boundaries."
)


@dataclass(frozen=True, slots=True)
class PromptContext:
    prefix: str
    suffix: str
    language: str


def window_lines(prefix: str, suffix: str, before: int, after: int) -> Tuple[str, str]:
    """Keep the last ``before`` prefix lines and the first ``after`` suffix lines."""
    prefix_lines = prefix.split("\n")
    if len(prefix_lines) > before:
        prefix_lines = prefix_lines[len(prefix_lines) - before:]
    suffix_lines = suffix.split("\n")[:after]
    return "\n".join(prefix_lines), "\n".join(suffix_lines)


class PromptBuilder:
    """Renders the system instructions and the FIM task prompt.

    Both templates are Jinja2 templates compiled once at construction, so a
    broken configured template is reported at startup. Render failures at
    request time raise :class:`TemplateError` and only fail that request.
    """

    def __init__(
        self,
        template: str = DEFAULT_PROMPT_TEMPLATE,
        *,
        system_template: Optional[str] = None,
        before_lines: int = 60,
        after_lines: int = 60,
        logger: Optional[logging.Logger] = None,
    ):
        if before_lines < 1 or after_lines < 1:
            raise ValueError("context windows must keep at least one line")
        self.before_lines = before_lines
        self.after_lines = after_lines
        self._log = component_logger("prompt", logger)
        self._env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self._task = self._compile(template, "prompt")
        self._system = self._compile(system_template or DEFAULT_SYSTEM_TEMPLATE, "system")

    def _compile(self, source: str, name: str):
        try:
            return self._env.from_string(source)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Invalid {name} template: {exc}") from exc

    def window(self, prefix: str, suffix: str) -> Tuple[str, str]:
        return window_lines(prefix, suffix, self.before_lines, self.after_lines)

    def build_context(self, prefix: str, suffix: str, language: str = "") -> PromptContext:
        windowed_prefix, windowed_suffix = self.window(prefix, suffix)
        return PromptContext(prefix=windowed_prefix, suffix=windowed_suffix, language=language)

    def build_system_prompt(self, language: str) -> str:
        return self._render(self._system, "system", language=language)

    def build_task_prompt(self, prefix: str, suffix: str, language: str = "") -> str:
        context = self.build_context(prefix, suffix, language)
        return self.render_context(context)

    def render_context(self, context: PromptContext) -> str:
        return self._render(
            self._task,
            "prompt",
            prefix=context.prefix,
            suffix=context.suffix,
            language=context.language,
        )

    def _render(self, template, name: str, **values: str) -> str:
        try:
            return template.render(**values)
        except JinjaTemplateError as exc:
            self._log.error("Rendering %s template failed: %s", name, exc)
            raise TemplateError(f"Executing {name} template failed: {exc}") from exc


__all__ = ["DEFAULT_SYSTEM_TEMPLATE", "PromptBuilder", "PromptContext", "window_lines"]
