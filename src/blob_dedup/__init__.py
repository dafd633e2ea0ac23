"""blob-dedup: content-level deduplication for stored blobs."""

__version__ = "0.1.0"
