"""Organization management operations."""

from .invites import generate_token
from .orgs import OrgApi

__all__ = ["OrgApi", "generate_token"]
