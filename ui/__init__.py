"""Web operations board."""
