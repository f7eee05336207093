"""Hub HTTP API."""
