"""SQLite storage shared by the job queue and project records."""
