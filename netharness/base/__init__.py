"""Shared building blocks: configuration, errors, traits."""
