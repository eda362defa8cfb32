"""datahaven — content-addressed file ingestion into MongoDB + S3."""

__version__ = "0.1.0"
