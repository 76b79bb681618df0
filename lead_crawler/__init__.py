"""Lead Crawler: background lead-generation pipeline platform."""

__version__ = "0.1.0"
