"""SQLite storage layer shared by agent instances."""
