"""Concurrent, crash-resumable multipart uploads of a directory to S3 or Azure Blob Storage."""

__version__ = "1.0.0"
