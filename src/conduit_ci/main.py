"""Process entrypoint for ``conduit`` and ``python -m conduit_ci``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from conduit_ci.domain.errors import ConfigError
from conduit_ci.persistence.state_db import StateDBSchemaError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """
    Exit codes scripts can branch on.

    ``SUCCESS`` also covers runs that partially succeeded with advisories;
    ``RUN_FAILED`` covers failed and cancelled runs and refused commands.
    """

    SUCCESS = 0
    RUN_FAILED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


# Errors the user fixes by editing a file or a path, not by filing a bug.
_USER_ERRORS: tuple[type[BaseException], ...] = (
    ConfigError,
    StateDBSchemaError,
    FileNotFoundError,
    NotADirectoryError,
    PermissionError,
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    try:
        from conduit_ci.ui.cli import run_cli

        return _exit_code(run_cli(argv))
    except SystemExit as exc:
        # argparse exits 2 on usage errors, which already matches CONFIG_ERROR.
        return _exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.RUN_FAILED)
    except Exception as exc:  # noqa: BLE001 - process boundary
        if any(isinstance(item, _USER_ERRORS) for item in _causes(exc)):
            _write_stderr(str(exc).strip() or type(exc).__name__)
            return int(ExitCode.CONFIG_ERROR)
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return int(ExitCode.INTERNAL_ERROR)


def _exit_code(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in {int(item) for item in ExitCode}:
        return raw
    if isinstance(raw, str) and raw.strip():
        _write_stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
