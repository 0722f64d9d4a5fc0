"""Incremental, content-addressed CDN deploys of static asset graphs."""

__version__ = "0.1.0"
