"""Persistence primitives shared by orchestrator repositories."""
