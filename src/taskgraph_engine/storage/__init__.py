"""SQLite persistence for the append-only audit log."""
