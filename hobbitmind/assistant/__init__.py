"""Narrator model integration: memory, tools and prompts."""
