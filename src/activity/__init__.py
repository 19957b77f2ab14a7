"""Activity/audit event sink."""
