"""
Entry point for running epic_swarm as a module.

Allows running as: python -m epic_swarm
"""

from epic_swarm.cli import cli_main

if __name__ == "__main__":
    cli_main()
