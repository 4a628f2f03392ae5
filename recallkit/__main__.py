"""Entry point for `python -m recallkit`."""

from recallkit.cli import cli


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
