"""Local file-system resource kinds.

    async with app("site"):
        out = await Folder("out", path="build/out")
        await File("index", path=f"{out.path}/index.html", content="<h1>hi</h1>")
        await TemplateFile(
            "nginx",
            path=f"{out.path}/nginx.conf",
            template="templates/nginx.conf.j2",
            variables={"port": 8080},
        )

All three tolerate their target being gone already when deleted.
"""

import shutil
from pathlib import Path
from typing import Any

from jinja2 import Template
from pydantic import BaseModel

from cairn.exceptions import ApplyError, ImmutableFieldChangedError
from cairn.resource import DELETE, UPDATE, Context, Contract, Resource
from cairn.util import ignore

__all__ = ["File", "Folder", "TemplateFile", "FileProps", "FolderProps", "TemplateFileProps"]


def _parse_mode(mode: str) -> int:
    mode_str = mode.lstrip("0") if mode.startswith("0") else mode
    return int(mode_str or "0", 8)


def _write(path: Path, content: str, mode: str | None) -> bool:
    """Write content if it differs, returning whether anything changed."""
    changed = not path.exists() or path.read_text() != content
    if changed:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    if mode:
        mode_int = _parse_mode(mode)
        if path.stat().st_mode & 0o7777 != mode_int:
            path.chmod(mode_int)
            changed = True
    return changed


def _remove_file(path: str | None) -> None:
    if path:
        with ignore():
            Path(path).unlink()


def _previous_path(ctx: Context, props: BaseModel) -> str:
    if ctx.output and ctx.output.get("path"):
        return ctx.output["path"]
    return props.path  # type: ignore[attr-defined]


class FileProps(BaseModel):
    path: str
    content: str = ""
    mode: str | None = None


class FolderProps(BaseModel):
    path: str
    # Remove contents on delete instead of failing on a non-empty folder
    clean: bool = False


class TemplateFileProps(BaseModel):
    path: str
    template: str
    variables: dict[str, Any] = {}
    mode: str | None = None


@Resource("fs::File", Contract(input=FileProps))
def File(ctx: Context, props: FileProps) -> dict[str, Any] | None:
    """A text file with the given content.

    Changing the path moves the file: the old one is removed and the new
    one written.
    """
    if ctx.event == DELETE:
        _remove_file(_previous_path(ctx, props))
        return None

    if ctx.event == UPDATE:
        old_path = _previous_path(ctx, props)
        if old_path != props.path:
            _remove_file(old_path)

    changed = _write(Path(props.path), props.content, props.mode)
    return {"path": props.path, "content": props.content, "changed": changed}


@Resource("fs::Folder", Contract(input=FolderProps))
def Folder(ctx: Context, props: FolderProps) -> dict[str, Any] | None:
    """A directory, created with its parents. The path cannot change."""
    if ctx.event == DELETE:
        path = Path(_previous_path(ctx, props))
        with ignore():
            if props.clean:
                shutil.rmtree(path)
            else:
                path.rmdir()
        return None

    if ctx.event == UPDATE:
        old_path = _previous_path(ctx, props)
        if old_path != props.path:
            raise ImmutableFieldChangedError("path", old_path, props.path)

    path = Path(props.path)
    if path.exists() and not path.is_dir():
        raise ApplyError(f"Path exists but is not a directory: {props.path}")
    path.mkdir(parents=True, exist_ok=True)
    return {"path": props.path}


@Resource("fs::TemplateFile", Contract(input=TemplateFileProps))
def TemplateFile(ctx: Context, props: TemplateFileProps) -> dict[str, Any] | None:
    """A file rendered from a Jinja2 template file.

    The template path is resolved against the working directory when
    relative.
    """
    if ctx.event == DELETE:
        _remove_file(_previous_path(ctx, props))
        return None

    if ctx.event == UPDATE:
        old_path = _previous_path(ctx, props)
        if old_path != props.path:
            _remove_file(old_path)

    src_path = Path(props.template)
    if not src_path.is_absolute():
        src_path = Path.cwd() / src_path
    if not src_path.exists():
        raise ApplyError(f"Template not found: {props.template}")

    rendered = Template(src_path.read_text()).render(**props.variables)
    changed = _write(Path(props.path), rendered, props.mode)
    return {
        "path": props.path,
        "template": str(src_path),
        "content": rendered,
        "changed": changed,
    }
