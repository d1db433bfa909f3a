"""
Main entry point for Agent Farm.

Installed as the `af` console script; detached dashboard and viewer
servers are started through `python -m agent_farm`.
"""

import sys
from typing import List, Optional

from .cli.enhanced_cli import AgentFarmCLI


def main(argv: Optional[List[str]] = None) -> None:
    """Run the CLI and exit with its status code."""
    sys.exit(AgentFarmCLI().run(argv))


if __name__ == "__main__":
    main()
