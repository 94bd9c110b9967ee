"""Workspace-scoped services: settings, durable state, project files."""
