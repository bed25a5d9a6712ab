"""Module entrypoint for ``python -m conduit_ci``."""

from __future__ import annotations

from conduit_ci.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
