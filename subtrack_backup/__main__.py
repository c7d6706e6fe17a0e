"""
Entry point for running subtrack_backup as a module.

Usage:
    python -m subtrack_backup --help
    python -m subtrack_backup backup --destination both
    python -m subtrack_backup restore --source local
"""

from subtrack_backup.cli import cli

if __name__ == "__main__":
    cli()
