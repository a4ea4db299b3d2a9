"""Subcommands registered on the ``shipyard`` Typer app."""
