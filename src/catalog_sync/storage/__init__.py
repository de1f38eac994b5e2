"""SQLite catalog and run storage, plus filesystem image hosting."""
