"""Agent definitions, the reasoning loop and its collaborators."""
