"""Entry point for `python -m artiflow`."""

from artiflow.cli import cli


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
