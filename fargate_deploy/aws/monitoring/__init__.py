"""Read-only observation of a deployed service."""
