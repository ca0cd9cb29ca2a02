"""Entry point for ``python -m lanrelay``."""

from lanrelay.cli.commands import main

if __name__ == "__main__":
    raise SystemExit(main())
