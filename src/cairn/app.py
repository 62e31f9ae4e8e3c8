"""cairn app entry point.

Provides the async context manager infrastructure programs run in:

    import asyncio
    from cairn import app
    from cairn.resources.fs import File, Folder

    async def main():
        async with app("myapp", stage="dev") as scope:
            folder = await Folder("out", path="build/out")
            await File("readme", path=f"{folder.path}/README", content="hello")

    asyncio.run(main())

The context manager:
- Resolves configuration from arguments, CAIRN_* variables and cairn.yml
- Opens the app scope and its stage scope and makes the stage current
- Destroys resources that were removed from the program (up phase)
- Destroys the whole stage when run in the destroy phase
- Prints a summary of lifecycle events on exit unless quiet
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Mapping

from cairn import console
from cairn.config import DEFAULT_CONFIG_FILE, CairnConfig
from cairn.destroy import destroy
from cairn.logging import configure_logging, get_logger
from cairn.scope import Phase, Scope, ScopeOptions
from cairn.state import FileSystemStateStore, StateStore

__all__ = ["app", "Phase"]

logger = get_logger(__name__)


@asynccontextmanager
async def app(
    name: str,
    *,
    stage: str | None = None,
    phase: Phase | str | None = None,
    password: str | None = None,
    state_dir: str | Path | None = None,
    quiet: bool | None = None,
    prefix: str | None = None,
    log_level: str | None = None,
    store: StateStore | None = None,
    finalize: bool = True,
    config_file: str | Path | None = DEFAULT_CONFIG_FILE,
    environ: Mapping[str, str] | None = None,
) -> AsyncGenerator[Scope, None]:
    """Run a program against the state of one app stage.

    Args:
        name: App name, the root of every resource identity
        stage: Stage name (default: CAIRN_STAGE, then $USER)
        phase: "up" (default), "destroy" or "read"
        password: Encrypts secrets in state (default: CAIRN_PASSWORD)
        state_dir: Directory for file-system state (default: .cairn)
        quiet: Suppress console output
        prefix: Identity prefix isolating concurrent runs
        log_level: Configure logging at this level (trace, debug, info, ...)
        store: State store to use instead of the file-system store
        finalize: Destroy stored resources that were not declared in this run
        config_file: YAML configuration file (None to skip)
        environ: Environment to read CAIRN_* settings from (default: os.environ)

    Yields:
        The stage scope, current for the duration of the block

    Raises:
        ConfigError: If configuration is invalid
        DeleteError: If finalize or destroy could not delete a resource
        DestroyError: If several resources could not be deleted

    Example:
        # Tear everything down
        async with app("myapp", phase="destroy"):
            pass

        # Read outputs recorded by an earlier run
        async with app("myapp", phase="read"):
            db = await Database("main")
            print(db.url)
    """
    config = CairnConfig.load(
        config_file,
        environ,
        stage=stage,
        phase=phase,
        password=password,
        state_dir=str(state_dir) if state_dir is not None else None,
        quiet=quiet,
        prefix=prefix,
        log_level=log_level,
    )
    if config.log_level_value is not None:
        configure_logging(level=config.log_level_value)

    options = ScopeOptions(
        quiet=config.quiet,
        prefix=config.prefix,
        phase=config.phase,
        password=config.password,
        state_store=store or FileSystemStateStore(config.state_dir),
    )
    root = Scope(name, options)
    stage_scope = root.child(config.stage)
    logger.info("Starting app", app=name, stage=config.stage, phase=config.phase.value)

    try:
        async with root:
            async with stage_scope:
                yield stage_scope

            if config.phase == Phase.DESTROY:
                await destroy(stage_scope)
            elif config.phase == Phase.UP and finalize:
                await stage_scope.finalize()
    finally:
        if not config.quiet:
            console.print_summary(root.results)
