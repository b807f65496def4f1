"""Dependency-aware task selection over the epic/story/task work graph."""
