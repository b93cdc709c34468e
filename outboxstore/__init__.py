"""Storage backends for a transactional outbox job queue: models, SQLite and Picodata."""

__version__ = "0.9.0"