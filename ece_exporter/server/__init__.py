"""HTTP server, collection workers and configuration."""
