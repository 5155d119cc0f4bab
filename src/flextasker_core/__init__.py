"""FlexTasker Core: database connection routing, response caching and monitoring."""

__version__ = "1.0.0"
