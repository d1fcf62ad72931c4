"""Agent entry point for running the lxcforge agent."""

import asyncio
import sys
from lxcforge.agent.main import run_agent


def main():
    """Run the lxcforge agent."""
    try:
        asyncio.run(run_agent())
    except KeyboardInterrupt:
        print("\nAgent shutdown requested")
        sys.exit(0)
    except Exception as e:
        print(f"Agent error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
