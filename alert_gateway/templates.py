from __future__ import annotations

import os
from pathlib import Path


class TemplateNotFound(RuntimeError):
    code = "template_not_found"


def is_plain_name(name: str) -> bool:
    return bool(name) and name not in {".", ".."} and "/" not in name and "\\" not in name


class TemplateRenderer:
    """Loads ``<application>.json`` alert templates and fills ``##KEY##`` placeholders."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)

    def _inside(self, path: Path) -> bool:
        return path.resolve().parent == self.directory.resolve()

    def find(self, application: str) -> Path:
        name = application.strip().lower()
        if not is_plain_name(name):
            raise TemplateNotFound(f"invalid application name {application!r}")

        filename = f"{name}.json"
        path = self.directory / filename
        if path.is_file() and self._inside(path):
            return path

        if self.directory.is_dir():
            with os.scandir(self.directory) as entries:
                for entry in entries:
                    if entry.is_file() and entry.name.lower() == filename and self._inside(Path(entry.path)):
                        return Path(entry.path)

        raise TemplateNotFound(f"no template for application={application} in {self.directory}")

    def render(self, application: str, variables: dict[str, str]) -> bytes:
        path = self.find(application)
        try:
            out = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TemplateNotFound(f"cannot read template {path}: {exc.strerror or exc}") from exc

        for key, value in variables.items():
            out = out.replace(f"##{key}##", value)
        return out.encode("utf-8")
