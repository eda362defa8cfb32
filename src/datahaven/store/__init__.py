"""Blob storage: content-addressed uploads to an S3-compatible store."""
