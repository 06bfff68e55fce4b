"""Module entrypoint for `python -m clipaction`."""

from clipaction.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
