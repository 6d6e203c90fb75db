"""
lazycrud - Schema-driven CRUD and query engine.

Declare tables once and get a full set of authenticated operations:
- Owned tables (one owner per document, public and authenticated reads)
- Org-scoped tables (roles, per-document editors ACL)
- Child tables (authorization derived from the parent document)
- Cache tables (key-addressed, TTL-expiring, optional fetcher)
- Organization management (members, invites, join requests)

Example:
    >>> from lazycrud import InMemoryDocumentStore, SchemaRegistry, field, owned_table, setup
    >>>
    >>> BLOG = owned_table(
    ...     "blog",
    ...     fields=(
    ...         field("title", "str", required=True),
    ...         field("category", "enum", enum_values=("tech", "life")),
    ...         field("published", "bool"),
    ...     ),
    ... )
    >>> registry = SchemaRegistry()
    >>> registry.register(BLOG)
    >>> engine = setup(InMemoryDocumentStore(registry), resolve_user_id=lambda req: req)
    >>> blog = engine.crud("blog", soft_delete=True)
    >>>
    >>> async with engine:
    ...     blog_id = await blog.create("user_1", title="Hello", category="tech")
    ...     page = await blog.pub.list(None, where={"published": True})

Invariants:
    - Every operation runs in one store transaction
    - Documents are only mutated through the generated operations'
      authorization checks, or through hooks that opt out explicitly
    - updated_at strictly increases per document

Version: 0.1.0
"""

from ._version import __version__
from .acl import OrgRole
from .api import create_app, header_user_resolver, serve
from .builders import Operation, OperationKind
from .config import AclFrom, Cascade, RateLimit, Settings, setup_logging
from .context import MutationContext, ReadContext
from .crud import CacheCrud, ChildCrud, OrgCrud, OwnedCrud
from .engine import Engine, setup
from .errors import (
    ConfigError,
    CrudError,
    ErrorCode,
    SchemaKindError,
    err,
    extract_error_data,
    get_error_code,
    get_error_detail,
    get_error_message,
    is_error_code,
    match_error,
)
from .files import FileStorage, InMemoryFileStorage, LocalFileStorage
from .middleware import CrudHooks, HookContext, Middleware, audit_log, input_sanitize, slow_query_warn
from .org import OrgApi
from .schema import (
    FieldDef,
    FieldKind,
    IndexDef,
    SchemaRegistry,
    SearchIndexDef,
    TableDef,
    TableKind,
    base_table,
    cache_table,
    child_table,
    field,
    org_table,
    owned_table,
)
from .store import (
    DocumentStore,
    FilterBuilder,
    InMemoryDocumentStore,
    Page,
    PaginationOpts,
    SqliteDocumentStore,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "Engine",
    "setup",
    "Operation",
    "OperationKind",
    "ReadContext",
    "MutationContext",
    "OwnedCrud",
    "OrgCrud",
    "ChildCrud",
    "CacheCrud",
    "OrgApi",
    "OrgRole",
    # Configuration
    "Settings",
    "setup_logging",
    "RateLimit",
    "Cascade",
    "AclFrom",
    # Schema
    "FieldDef",
    "FieldKind",
    "IndexDef",
    "SearchIndexDef",
    "TableDef",
    "TableKind",
    "SchemaRegistry",
    "field",
    "owned_table",
    "org_table",
    "child_table",
    "cache_table",
    "base_table",
    # Stores
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
    "FilterBuilder",
    "Page",
    "PaginationOpts",
    # Files
    "FileStorage",
    "InMemoryFileStorage",
    "LocalFileStorage",
    # Hooks
    "CrudHooks",
    "HookContext",
    "Middleware",
    "audit_log",
    "slow_query_warn",
    "input_sanitize",
    # Errors
    "CrudError",
    "ErrorCode",
    "ConfigError",
    "SchemaKindError",
    "err",
    "extract_error_data",
    "get_error_code",
    "get_error_message",
    "get_error_detail",
    "is_error_code",
    "match_error",
    # HTTP
    "create_app",
    "header_user_resolver",
    "serve",
]
