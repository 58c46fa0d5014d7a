"""steelcut: run commands across a fleet of Unix hosts."""

__version__ = "0.1.0"
