"""HTTP surface for generated operations."""

from .app import create_app, header_user_resolver, serve, status_for

__all__ = ["create_app", "header_user_resolver", "serve", "status_for"]
