"""Source ingestion: object storage access, text extraction and decoding."""
