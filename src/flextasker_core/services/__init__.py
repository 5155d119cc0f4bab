"""Service composition for the FlexTasker data layer."""

from .container import AppServices, build_services

__all__ = ["AppServices", "build_services"]
