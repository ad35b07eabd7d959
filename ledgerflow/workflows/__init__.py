"""Workflow definitions, navigation and the workflow runner."""
