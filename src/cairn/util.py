"""Helpers for writing resource handlers."""

import errno as errno_codes
from contextlib import contextmanager
from typing import Generator

# Codes meaning "the object is already gone"
NOT_FOUND = (404, "NotFound", "ResourceNotFound", "NoSuchEntity", errno_codes.ENOENT)


def _codes_of(error: BaseException) -> list[object]:
    codes = []
    for attr in ("code", "status", "status_code", "errno"):
        value = getattr(error, attr, None)
        if value is not None:
            codes.append(value)
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if status is not None:
        codes.append(status)
    return codes


@contextmanager
def ignore(*codes: object) -> Generator[None, None, None]:
    """Suppress errors carrying one of the given codes.

    An error matches when its code, status, status_code, errno or
    response.status_code equals one of codes. With no codes given,
    NOT_FOUND is used, which makes deletes tolerate "already gone".

    Example:
        if ctx.event == "delete":
            with ignore(404):
                await api.delete_bucket(ctx.output["name"])
            return None
    """
    wanted = codes or NOT_FOUND
    try:
        yield
    except Exception as e:
        if not any(code in wanted for code in _codes_of(e)):
            raise
