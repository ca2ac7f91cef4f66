"""Background maintenance loops."""
