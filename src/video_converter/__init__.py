"""Chunked upload to MPEG-DASH conversion worker."""

__version__ = "0.1.0"
