"""Media asset lifecycle backend: uploads, metadata, transformation URLs, search and cascade deletion."""

__version__ = "0.1.0"
