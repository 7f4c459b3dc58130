"""Core primitives: models, change detection, observability and verification."""
