"""SQLite storage for the analysis queue and node index."""
