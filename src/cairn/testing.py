"""Test harness that runs each test in its own scope and cleans up after it.

    import pytest
    from cairn.testing import scoped_test

    harness = scoped_test("fs-tests")

    @pytest.mark.asyncio
    @harness
    async def test_writes_file(tmp_path, scope):
        out = await File("out", path=str(tmp_path / "out.txt"), content="x")
        assert out.content == "x"
        # everything created here is destroyed when the test returns or fails

Each test gets a scope named after the test function under the app scope,
with a prefix that keeps concurrent CI runs on one account apart.
"""

import functools
import inspect
import os
import re
from getpass import getuser
from typing import Any, Awaitable, Callable

from cairn.destroy import destroy
from cairn.scope import Scope, ScopeOptions
from cairn.state import StateStore


def branch_prefix() -> str:
    """Identity prefix for test runs.

    Uses CAIRN_BRANCH_PREFIX when set (e.g. the CI branch or PR number),
    otherwise the current user name.
    """
    prefix = os.environ.get("CAIRN_BRANCH_PREFIX")
    if not prefix:
        try:
            prefix = getuser()
        except (KeyError, OSError):
            prefix = "local"
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", prefix).strip("-") or "local"


def scoped_test(
    app_name: str = "test",
    *,
    prefix: str | None = None,
    store: StateStore | None = None,
    password: str | None = None,
    quiet: bool = True,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Build a decorator for async tests that declare resources.

    The decorated test receives its scope as the ``scope`` keyword
    argument; the scope is also current while the test runs. Whatever the
    test left behind is destroyed afterwards, whether it passed or failed.

    Args:
        app_name: Name of the app scope tests run under
        prefix: Identity prefix (default: branch_prefix())
        store: State store shared by the tests (default: one in-memory store per test)
        password: Password for secret encryption
        quiet: Suppress console output

    Returns:
        Decorator for async test functions
    """

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            root = Scope(
                app_name,
                ScopeOptions(
                    quiet=quiet,
                    prefix=prefix or branch_prefix(),
                    is_test=True,
                    password=password,
                    state_store=store,
                ),
            )
            scope = root.child(func.__name__)
            try:
                async with root, scope:
                    return await func(*args, scope=scope, **kwargs)
            finally:
                await destroy(scope)

        # Hide the injected argument from pytest's fixture lookup
        signature = inspect.signature(func)
        wrapper.__signature__ = signature.replace(  # type: ignore[attr-defined]
            parameters=[p for name, p in signature.parameters.items() if name != "scope"]
        )
        return wrapper

    return decorator
