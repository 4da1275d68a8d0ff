"""Infrastructure layer: persistence and Redis."""
