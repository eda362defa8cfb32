"""Metadata index: record models and document-store sinks."""
