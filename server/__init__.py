"""Admin HTTP API and background indexing jobs."""
