"""Content-addressed media store with deduplicated blob storage."""
