"""Operator tooling for Squad Guardian."""
