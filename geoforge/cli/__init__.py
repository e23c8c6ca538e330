"""geoforge CLI — Typer-based command-line interface.

Provides the ``geoforge`` command with subcommands for running and
planning pipelines, fetching sources, managing cache domains, and
browsing run history.

All output uses Rich for formatted terminal display.
"""
