"""Jinja2 template renderer for delivery emails.

Resolves templates with a two-tier loader:
1. User-specified ``templates_path`` (overrides)
2. Built-in templates shipped with the package
"""

from __future__ import annotations

from typing import Any

from jinja2 import BaseLoader, ChoiceLoader, Environment, FileSystemLoader, PackageLoader


class TemplateRenderer:
    """Renders email subjects and bodies from Jinja2 templates."""

    def __init__(self, templates_path: str | None = None) -> None:
        loaders: list[BaseLoader] = []
        if templates_path:
            loaders.append(FileSystemLoader(templates_path))
        loaders.append(PackageLoader("notiflow.notifications", "templates"))

        self._env = Environment(
            loader=ChoiceLoader(loaders),
            autoescape=True,
            keep_trailing_newline=False,
        )

    def render_body(self, name: str, context: dict[str, Any]) -> str:
        """Render ``{name}_body.html`` only."""
        return self._env.get_template(f"{name}_body.html").render(**context)

    def render(self, name: str, context: dict[str, Any]) -> tuple[str, str]:
        """Render subject and body for a template family.

        Parameters
        ----------
        name:
            Template family, e.g. ``"verification"``.
        context:
            Template variables.

        Returns
        -------
        tuple[str, str]
            ``(subject, body_html)``

        """
        subject_tpl = self._env.get_template(f"{name}_subject.txt")
        subject = subject_tpl.render(**context).strip()
        return subject, self.render_body(name, context)
