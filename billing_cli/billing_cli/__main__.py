"""Entry point for `python -m billing_cli` and the `bellybox-billing` console script."""

from __future__ import annotations

from billing_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
