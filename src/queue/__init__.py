"""Redis-backed job queue and workers."""
