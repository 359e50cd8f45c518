"""Venue photo enrichment pipeline: POI matching, candidate discovery, validation and import."""

__version__ = "0.3.0"
