"""SQLite storage: tables, engine policy and migrations."""
