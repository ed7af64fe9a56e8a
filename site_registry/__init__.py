"""HTTP service for organizations, monitor settings and the report trigger."""
