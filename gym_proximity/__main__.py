"""Module entry point: python -m gym_proximity ..."""

from __future__ import annotations

from gym_proximity.cli import main


if __name__ == "__main__":
    raise SystemExit(main())
