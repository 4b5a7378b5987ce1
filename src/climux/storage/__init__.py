"""SQLite persistence primitives: engine policy, tables and migrations."""
