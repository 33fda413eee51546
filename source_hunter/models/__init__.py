"""Dataclasses shared by the source, scoring, storage and scan layers."""
