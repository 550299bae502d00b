"""HTTP API for jobs, scenarios and recommendations."""
