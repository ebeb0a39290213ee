"""Entry point for ``python -m lsptop`` and the ``lsp-top`` script."""

from __future__ import annotations

import sys


def main() -> None:
    from lsptop.cli import run_cli

    sys.exit(run_cli(sys.argv[1:]))


if __name__ == "__main__":
    main()
