"""Database models, session management and shared repositories."""
