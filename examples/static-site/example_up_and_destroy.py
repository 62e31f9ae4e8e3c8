#!/usr/bin/env python3
"""Example: Declare a small static site, change it, then tear it down.

This example demonstrates:
- Declaring resources inside app()
- Data dependencies between resources (the page depends on the folder)
- Re-running: unchanged resources are updates, removed ones are deleted
- Destroy phase

Run with: python example_up_and_destroy.py
"""

import asyncio
import tempfile
from pathlib import Path

from cairn import app
from cairn.resources.fs import File, Folder


async def deploy(state_dir: str, site_dir: Path, pages: dict[str, str]) -> None:
    async with app("static-site", stage="dev", state_dir=state_dir) as scope:
        public = await Folder("public", path=str(site_dir / "public"), clean=True)
        await asyncio.gather(*(
            File(name, path=f"{public.path}/{name}.html", content=body, folder=public)
            for name, body in pages.items()
        ))
        print(f"Deployed {len(pages)} pages under {'/'.join(scope.chain)}")


async def main():
    with tempfile.TemporaryDirectory() as tmpdir:
        state_dir = str(Path(tmpdir) / ".cairn")
        site_dir = Path(tmpdir) / "site"

        await deploy(state_dir, site_dir, {"index": "<h1>home</h1>", "about": "<h1>about</h1>"})
        # "about" is no longer declared, so it is deleted when the run completes
        await deploy(state_dir, site_dir, {"index": "<h1>home v2</h1>"})
        print(sorted(p.name for p in (site_dir / "public").iterdir()))

        async with app("static-site", stage="dev", state_dir=state_dir, phase="destroy"):
            pass
        print(f"Site removed: {not (site_dir / 'public').exists()}")


if __name__ == "__main__":
    asyncio.run(main())
