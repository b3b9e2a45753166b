"""Journey execution engine: per-contact marketing automation."""
