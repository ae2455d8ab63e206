"""Configuration, logging, authentication and error types."""
