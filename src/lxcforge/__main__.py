"""Main entry point dispatcher for lxcforge commands."""

import sys


def main():
    """Point at the real entry points."""
    print("Use 'python -m lxcforge.agent' (or lxcforge-agent) to run the agent")
    print("Use 'python -m lxcforge.cli' (or forgectl) for the command-line interface")
    sys.exit(1)


if __name__ == "__main__":
    main()
