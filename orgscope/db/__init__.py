"""Database models, sessions and row-level security."""
