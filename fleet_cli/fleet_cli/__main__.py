"""Entry point for `python -m fleet_cli` and the `fleet-migrate` console script."""

from __future__ import annotations

from fleet_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
