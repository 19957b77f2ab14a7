"""Process entrypoints for the publication workers and the scheduled backfill."""
