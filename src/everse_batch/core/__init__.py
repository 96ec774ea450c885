"""Domain models, interfaces, and engines."""
