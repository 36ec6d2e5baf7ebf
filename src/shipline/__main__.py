"""Module entrypoint for ``python -m shipline``."""

from __future__ import annotations

from shipline.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
