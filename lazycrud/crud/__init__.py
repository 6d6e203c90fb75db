"""Table factories: owned, org-scoped, child and cache."""

from .cache import CacheCrud
from .child import ChildCrud, ChildPublicApi
from .org import OrgCrud
from .owned import OwnedCrud, ReadApi

__all__ = [
    "CacheCrud",
    "ChildCrud",
    "ChildPublicApi",
    "OrgCrud",
    "OwnedCrud",
    "ReadApi",
]
