"""Template rendering for host scripts and deployment files.

Built-in templates live beside this module (``iis/``, ``service/``, ``sql/``,
``web/``). A site operator may shadow any of them by placing a file with the
same relative name under the configured ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
)

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be located or rendered."""


def ps_quote(value: object) -> str:
    """Escape *value* for use inside a single-quoted PowerShell string."""
    return str(value).replace("'", "''")


def sql_quote(value: object) -> str:
    """Escape *value* for use inside a single-quoted T-SQL literal."""
    return str(value).replace("'", "''")


def sql_ident(value: object) -> str:
    """Escape *value* for use inside a bracketed T-SQL identifier."""
    return str(value).replace("]", "]]")


@dataclass(slots=True)
class TemplateEngine:
    """Render Jinja2 templates with strict variable checking."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates under *override_dir*."""
        loaders: list[FileSystemLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        environment.filters["ps"] = ps_quote
        environment.filters["sql"] = sql_quote
        environment.filters["sqlident"] = sql_ident
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context* and return the text."""
        try:
            template = self.environment.get_template(name)
            return template.render(**dict(context))
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render template '{name}': {exc}") from exc

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when the file changed."""
        content = self.render_to_string(name, context)
        destination = Path(destination)
        if destination.exists():
            try:
                if destination.read_text(encoding="utf-8") == content:
                    os.chmod(destination, mode)
                    return False
            except UnicodeDecodeError:
                pass

        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_path, destination)
            os.chmod(destination, mode)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = [
    "TemplateEngine",
    "TemplateRenderError",
    "ps_quote",
    "sql_ident",
    "sql_quote",
]
