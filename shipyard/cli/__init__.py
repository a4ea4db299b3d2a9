"""Shipyard CLI — Typer-based command-line interface.

Provides the ``shipyard`` command with subcommands for managing deploy
targets, deploying revisions, inspecting and cancelling rollout plans,
and maintenance (recovery, artifact pruning, ledger verification).

All output uses Rich for formatted terminal display.
"""
