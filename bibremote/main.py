#!/usr/bin/env python3
"""
Main entry point for the Typer-based bibremote CLI.

This delegates to the UI layer in bibremote.ui.cli to keep the
console script mapping stable.
"""

from bibremote.ui.cli import run as bibremote


if __name__ == "__main__":
    bibremote()
