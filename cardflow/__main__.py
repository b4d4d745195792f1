"""
Entry point for running cardflow as a module.

Allows running as: python -m cardflow
"""

from cardflow.cli import cli_main

if __name__ == "__main__":
    cli_main()
