"""CLI entry point."""

from lxcforge.cli.main import main


if __name__ == "__main__":
    main()
