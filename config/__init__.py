"""Configuration loading for the consent engine."""
