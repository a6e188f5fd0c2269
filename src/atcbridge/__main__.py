"""Console entrypoint for the atcbridge worker.

Delegates to :mod:`atcbridge.cli` so that ``python -m atcbridge`` and the
installed ``atcbridge`` console script run the same code.
"""

from __future__ import annotations

from atcbridge.cli import main as cli_main


def main() -> None:
    """Application entrypoint (delegates to :func:`atcbridge.cli.main`)."""
    cli_main()


if __name__ == "__main__":
    main()
