"""Tests for the file-system resource kinds."""

import os
import tempfile
from pathlib import Path

import pytest

from cairn import ApplyError, ImmutableFieldChangedError, MemoryStateStore, Scope, ScopeOptions, destroy
from cairn.resources.fs import File, Folder, TemplateFile


def make_root(store=None):
    return Scope("site", ScopeOptions(quiet=True, state_store=store if store is not None else MemoryStateStore()))


class TestFile:
    """Tests for the File resource."""

    @pytest.mark.asyncio
    async def test_create_update_delete(self):
        """Test the full lifecycle of a file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "hello.txt"
            store = MemoryStateStore()

            first = make_root(store)
            async with first:
                created = await File("hello", path=str(path), content="hello")
            assert created.changed is True
            assert path.read_text() == "hello"

            second = make_root(store)
            async with second:
                same = await File("hello", path=str(path), content="hello")
            assert same.event == "update"
            assert same.changed is False

            third = make_root(store)
            async with third:
                await File("hello", path=str(path), content="bye")
            assert path.read_text() == "bye"

            await destroy(third)
            assert not path.exists()

    @pytest.mark.asyncio
    async def test_path_change_moves_file(self):
        """Test that changing the path removes the old file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            old = Path(tmpdir) / "old.txt"
            new = Path(tmpdir) / "new.txt"
            store = MemoryStateStore()

            first = make_root(store)
            async with first:
                await File("f", path=str(old), content="x")

            second = make_root(store)
            async with second:
                moved = await File("f", path=str(new), content="x")

            assert moved.path == str(new)
            assert new.exists()
            assert not old.exists()

    @pytest.mark.asyncio
    async def test_mode(self):
        """Test applying a file mode."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "script.sh"
            root = make_root()
            async with root:
                await File("script", path=str(path), content="#!/bin/sh\n", mode="0700")
            assert os.stat(path).st_mode & 0o777 == 0o700

    @pytest.mark.asyncio
    async def test_delete_tolerates_missing_file(self):
        """Test that deleting a file removed out of band succeeds."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "gone.txt"
            root = make_root()
            async with root:
                await File("gone", path=str(path), content="x")
            path.unlink()

            await destroy(root)
            assert len(root.store) == 0


class TestFolder:
    """Tests for the Folder resource."""

    @pytest.mark.asyncio
    async def test_create_and_delete(self):
        """Test creating a folder with parents and removing it."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "a" / "b"
            root = make_root()
            async with root:
                folder = await Folder("out", path=str(path))
            assert folder.path == str(path)
            assert path.is_dir()

            await destroy(root)
            assert not path.exists()

    @pytest.mark.asyncio
    async def test_path_is_immutable(self):
        """Test that moving a folder is refused."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = MemoryStateStore()
            first = make_root(store)
            async with first:
                await Folder("out", path=str(Path(tmpdir) / "one"))

            second = make_root(store)
            async with second:
                with pytest.raises(ImmutableFieldChangedError) as exc_info:
                    await Folder("out", path=str(Path(tmpdir) / "two"))

            assert exc_info.value.field == "path"
            assert not (Path(tmpdir) / "two").exists()

    @pytest.mark.asyncio
    async def test_file_in_folder_destroyed_first(self):
        """Test that a file depending on its folder is removed before the folder."""
        with tempfile.TemporaryDirectory() as tmpdir:
            root = make_root()
            async with root:
                folder = await Folder("out", path=str(Path(tmpdir) / "out"))
                await File("index", path=f"{folder.path}/index.html", content="<h1>hi</h1>", folder=folder)

            await destroy(root)
            assert not (Path(tmpdir) / "out").exists()

    @pytest.mark.asyncio
    async def test_existing_file_in_the_way(self):
        """Test that a regular file at the folder path is an error."""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "taken"
            path.write_text("x")
            root = make_root()
            async with root:
                with pytest.raises(ApplyError, match="not a directory"):
                    await Folder("out", path=str(path))


class TestTemplateFile:
    """Tests for the TemplateFile resource."""

    @pytest.mark.asyncio
    async def test_render(self):
        """Test rendering a template with variables."""
        with tempfile.TemporaryDirectory() as tmpdir:
            template = Path(tmpdir) / "nginx.conf.j2"
            template.write_text("listen {{ port }};")
            dest = Path(tmpdir) / "out" / "nginx.conf"

            root = make_root()
            async with root:
                rendered = await TemplateFile(
                    "nginx", path=str(dest), template=str(template), variables={"port": 8080}
                )

            assert dest.read_text() == "listen 8080;"
            assert rendered.content == "listen 8080;"
            assert rendered.changed is True

            await destroy(root)
            assert not dest.exists()

    @pytest.mark.asyncio
    async def test_missing_template(self):
        """Test that a missing template fails the create."""
        with tempfile.TemporaryDirectory() as tmpdir:
            root = make_root()
            async with root:
                with pytest.raises(ApplyError, match="Template not found"):
                    await TemplateFile(
                        "missing",
                        path=str(Path(tmpdir) / "out.txt"),
                        template=str(Path(tmpdir) / "nope.j2"),
                    )
