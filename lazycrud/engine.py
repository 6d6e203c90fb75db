"""
Engine setup and table factories.

setup() wires a document store, the caller-identity resolver, optional
file storage, global hooks and middleware into an Engine. The Engine's
factories generate operation sets per table:

    crud(table, ...)        owned documents
    org_crud(table, ...)    org-scoped documents with roles and ACL
    child_crud(table, ...)  documents authorized through their parent
    cache_crud(table, ...)  key-addressed TTL cache
    org(...)                organization management
    unique_check(...)       slug-style availability query
    me                      the caller's users row

Every generated operation lands in engine.operations under its name
("blog.create", "blog.auth.list", "org.invite", ...), which is what the
HTTP surface dispatches on.

Invariants:
    - A table handed to the wrong factory fails at setup time
      (SchemaKindError), never at call time
    - Each table gets at most one operation set
    - System tables are registered by setup()

How to change safely:
    - New factories must check the table kind through registry.require
    - Keep operation names stable; they are the wire contract
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional, Sequence, Union

from .builders import Builders, Operation
from .config import AclFrom, Cascade, RateLimit, Settings
from .context import Clock, ReadContext, Runtime, UserResolver, now_ms
from .crud import CacheCrud, ChildCrud, OrgCrud, OwnedCrud
from .crud.cache import Fetcher, Transform
from .errors import ConfigError
from .files import FileStorage
from .middleware import CrudHooks, Middleware, compose_middleware, merge_hooks
from .org import OrgApi
from .schema.system import register_system_tables
from .schema.types import TableDef, TableKind
from .store.base import Document, DocumentStore
from .store.expr import FilterBuilder

logger = logging.getLogger(__name__)

TableRef = Union[str, TableDef]


class Engine:
    """Factories plus the registry of generated operations.

    Attributes:
        runtime: Shared dependencies handed to every operation
        operations: Operation name -> Operation
    """

    def __init__(self, runtime: Runtime) -> None:
        self.runtime = runtime
        self.operations: Dict[str, Operation] = {}
        self.builders = Builders(runtime, self.operations)
        self._tables: set[str] = set()
        self._org: Optional[OrgApi] = None
        self._started = False
        self.me = self.builders.public_query.define("user.me", self._me)

    @property
    def store(self) -> DocumentStore:
        return self.runtime.store

    @property
    def settings(self) -> Settings:
        return self.runtime.settings

    async def start(self) -> None:
        """Connect the store and freeze the schema. Idempotent.

        Raises:
            ConfigError: If a table references an unregistered table
        """
        if self._started:
            return
        problems = self.store.registry.validate_all()
        if problems:
            raise ConfigError("; ".join(problems))
        await self.store.connect()
        self._started = True
        if not self.store.registry.frozen:
            fingerprint = self.store.registry.freeze()
            logger.info("engine:start", extra={"schema_fingerprint": fingerprint})

    async def close(self) -> None:
        if self._started:
            await self.store.close()
            self._started = False

    async def __aenter__(self) -> Engine:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def operation(self, name: str) -> Operation:
        """Raises:
            KeyError: If no operation has that name
        """
        return self.operations[name]

    def _claim(self, table: TableRef, kind: TableKind) -> TableDef:
        registry = self.store.registry
        if isinstance(table, TableDef):
            if table.name not in registry:
                registry.register(table)
            table = table.name
        table_def = registry.require(table, kind)
        if table_def.name in self._tables:
            raise ConfigError(f"Table '{table_def.name}' already has an operation set")
        self._tables.add(table_def.name)
        return table_def

    def crud(
        self,
        table: TableRef,
        soft_delete: bool = False,
        hooks: Optional[CrudHooks] = None,
        rate_limit: Optional[RateLimit] = None,
        cascade: Sequence[Cascade] = (),
        auth_where: Optional[Dict[str, Any]] = None,
        pub_where: Optional[Dict[str, Any]] = None,
    ) -> OwnedCrud:
        """Operations for an owned table."""
        return OwnedCrud(
            self.runtime,
            self.builders,
            self._claim(table, TableKind.OWNED),
            soft_delete=soft_delete,
            hooks=hooks,
            rate_limit=rate_limit,
            cascade=cascade,
            auth_where=auth_where,
            pub_where=pub_where,
        )

    def org_crud(
        self,
        table: TableRef,
        soft_delete: bool = False,
        hooks: Optional[CrudHooks] = None,
        rate_limit: Optional[RateLimit] = None,
        acl: bool = False,
        acl_from: Optional[AclFrom] = None,
        cascade: Union[Cascade, Sequence[Cascade], None] = None,
    ) -> OrgCrud:
        """Operations for an org-scoped table."""
        if isinstance(cascade, Cascade):
            cascade = (cascade,)
        return OrgCrud(
            self.runtime,
            self.builders,
            self._claim(table, TableKind.ORG),
            soft_delete=soft_delete,
            hooks=hooks,
            rate_limit=rate_limit,
            acl=acl,
            acl_from=acl_from,
            cascade=cascade or (),
        )

    def child_crud(
        self,
        table: TableRef,
        hooks: Optional[CrudHooks] = None,
        pub_field: Optional[str] = None,
    ) -> ChildCrud:
        """Operations for a child table."""
        return ChildCrud(
            self.runtime,
            self.builders,
            self._claim(table, TableKind.CHILD),
            hooks=hooks,
            pub_field=pub_field,
        )

    def cache_crud(
        self,
        table: TableRef,
        fetcher: Optional[Fetcher] = None,
        ttl_ms: Optional[int] = None,
        stale_while_revalidate: bool = False,
        hooks: Optional[CrudHooks] = None,
        on_fetch: Optional[Transform] = None,
        rate_limit: Optional[RateLimit] = None,
    ) -> CacheCrud:
        """Operations for a cache table."""
        return CacheCrud(
            self.runtime,
            self.builders,
            self._claim(table, TableKind.CACHE),
            fetcher=fetcher,
            ttl_ms=ttl_ms,
            stale_while_revalidate=stale_while_revalidate,
            hooks=hooks,
            on_fetch=on_fetch,
            rate_limit=rate_limit,
        )

    def org(self, cascade_tables: Iterable[str] = ()) -> OrgApi:
        """Organization management; cascade_tables are wiped by org.remove."""
        if self._org is not None:
            raise ConfigError("Organization operations are already set up")
        cascade_tables = tuple(cascade_tables)
        for name in cascade_tables:
            table_def = self.store.registry.require(name)
            if table_def.get_index("by_org") is None:
                raise ConfigError(f"Cascade table '{name}' has no by_org index")
        self._org = OrgApi(self.builders, cascade_tables)
        return self._org

    def unique_check(self, table: TableRef, field: str, index: Optional[str] = None) -> Operation:
        """Public query (value, exclude=None) -> True when no other row holds value."""
        name = table.name if isinstance(table, TableDef) else table
        table_def = self.store.registry.require(name)
        if table_def.get_field(field) is None:
            raise ConfigError(f"Table '{name}' has no field '{field}'")
        if index is not None and table_def.get_index(index) is None:
            raise ConfigError(f"Table '{name}' has no index '{index}'")
        fb = FilterBuilder()

        async def handler(ctx: ReadContext, value: Any, exclude: Optional[str] = None) -> bool:
            query = ctx.db.query(name)
            if index is not None:
                query = query.with_index(index, {field: value})
            else:
                query = query.filter(fb.eq(fb.field(field), value))
            existing = await query.first()
            return existing is None or existing["_id"] == exclude

        return self.builders.public_query.define(f"{name}.unique.{field}", handler)

    async def _me(self, ctx: ReadContext) -> Optional[Document]:
        if ctx.viewer_id is None:
            return None
        return await ctx.db.get(ctx.viewer_id, "users")


def setup(
    store: DocumentStore,
    resolve_user_id: UserResolver,
    storage: Optional[FileStorage] = None,
    hooks: Optional[CrudHooks] = None,
    middleware: Sequence[Middleware] = (),
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> Engine:
    """Create an Engine.

    Args:
        store: Document store (its registry holds the tables)
        resolve_user_id: request -> user id or None, sync or async
        storage: Attachment storage for file fields
        hooks: Global hooks applied to every table
        middleware: Middleware composed in registration order
        settings: Engine settings (defaults from the environment)
        clock: Millisecond clock, injectable for tests

    Raises:
        ValueError: If settings are invalid
    """
    settings = settings or Settings()
    settings.check()
    if not store.registry.frozen:
        register_system_tables(store.registry)
    global_hooks = merge_hooks(hooks, compose_middleware(*middleware) if middleware else None)
    runtime = Runtime(
        store=store,
        settings=settings,
        resolve_user_id=resolve_user_id,
        storage=storage,
        clock=clock or now_ms,
        global_hooks=global_hooks,
    )
    logger.info(
        "engine:setup",
        extra={
            "middleware": [mw.name for mw in middleware],
            "storage": type(storage).__name__ if storage is not None else None,
        },
    )
    return Engine(runtime)
