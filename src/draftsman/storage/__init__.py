"""SQLite persistence: SQLModel tables, engine setup and Alembic migrations."""
