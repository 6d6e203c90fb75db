"""
Operation builders.

Every generated operation is built by one of four builders, each
producing a context of a fixed type before the handler runs:

    QueryBuilder           authenticated read   -> ReadContext
    PublicQueryBuilder     optional viewer      -> ReadContext
    MutationBuilder        authenticated write  -> MutationContext
    PublicMutationBuilder  anonymous write      -> MutationContext

An Operation is an async callable, op(request, **args). It resolves the
caller from the request through the engine's resolve_user_id, and runs
the handler inside one store transaction.

Invariants:
    - Authentication is checked before the handler sees any argument
    - Operation names are unique per engine
    - One call is one transaction() block, except per_item operations,
      whose handlers open one block per item
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .context import MutationContext, ReadContext, Runtime
from .errors import ConfigError, CrudError, ErrorCode, err
from .middleware import resolve

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


class OperationKind(Enum):
    QUERY = "query"
    PUBLIC_QUERY = "public_query"
    MUTATION = "mutation"
    PUBLIC_MUTATION = "public_mutation"


class Operation:
    """A generated, callable operation.

    Example:
        >>> blog.create  # Operation('blog.create', mutation)
        >>> await blog.create(request, title="Hello")
    """

    def __init__(
        self, name: str, builder: OperationBuilder, handler: Handler, per_item: bool = False
    ) -> None:
        self.name = name
        self.kind = builder.kind
        self.per_item = per_item
        self._builder = builder
        self._handler = handler

    def check_args(self, args: Dict[str, Any]) -> None:
        """Raises VALIDATION_FAILED when args do not fit the handler."""
        try:
            inspect.signature(self._handler).bind(None, **args)
        except TypeError as e:
            raise CrudError(ErrorCode.VALIDATION_FAILED, message=str(e), op=self.name) from e

    async def __call__(self, request: Any = None, **args: Any) -> Any:
        self.check_args(args)
        if self.per_item:
            return await self._run(request, args)
        async with self._builder.runtime.store.transaction():
            return await self._run(request, args)

    async def _run(self, request: Any, args: Dict[str, Any]) -> Any:
        ctx = await self._builder.make_context(request)
        logger.debug(
            "operation:call",
            extra={"operation": self.name, "user_id": ctx.viewer_id},
        )
        return await self._handler(ctx, **args)

    def __repr__(self) -> str:
        return f"Operation({self.name!r}, {self.kind.value})"


class OperationBuilder(ABC):
    """Turns handlers into Operations of one kind."""

    kind: OperationKind

    def __init__(self, runtime: Runtime, registry: Optional[Dict[str, Operation]] = None) -> None:
        self.runtime = runtime
        self._registry = registry if registry is not None else {}

    async def _viewer(self, request: Any) -> Optional[str]:
        return await resolve(self.runtime.resolve_user_id(request))

    async def _authenticated(self, request: Any) -> tuple[str, dict]:
        user_id = await self._viewer(request)
        if user_id is None:
            raise err(ErrorCode.NOT_AUTHENTICATED)
        user = await self.runtime.store.get(user_id, "users")
        if user is None:
            raise err(ErrorCode.USER_NOT_FOUND)
        return user_id, user

    @abstractmethod
    async def make_context(self, request: Any) -> ReadContext:
        ...

    def define(self, name: str, handler: Handler, per_item: bool = False) -> Operation:
        """Wrap handler as an Operation registered under name.

        per_item operations run without an enclosing transaction; the
        handler opens store.transaction() around each item so a failing
        item keeps the items before it.

        Raises:
            ConfigError: If name is already taken
        """
        if name in self._registry:
            raise ConfigError(f"Operation '{name}' is already defined")
        operation = Operation(name, self, handler, per_item=per_item)
        self._registry[name] = operation
        return operation


class QueryBuilder(OperationBuilder):
    kind = OperationKind.QUERY

    async def make_context(self, request: Any) -> ReadContext:
        user_id, user = await self._authenticated(request)
        return ReadContext(runtime=self.runtime, viewer_id=user_id, user=user)


class PublicQueryBuilder(OperationBuilder):
    kind = OperationKind.PUBLIC_QUERY

    async def make_context(self, request: Any) -> ReadContext:
        return ReadContext(runtime=self.runtime, viewer_id=await self._viewer(request))


class MutationBuilder(OperationBuilder):
    kind = OperationKind.MUTATION

    async def make_context(self, request: Any) -> MutationContext:
        user_id, user = await self._authenticated(request)
        return MutationContext(runtime=self.runtime, viewer_id=user_id, user=user)


class PublicMutationBuilder(OperationBuilder):
    kind = OperationKind.PUBLIC_MUTATION

    async def make_context(self, request: Any) -> MutationContext:
        return MutationContext(runtime=self.runtime, viewer_id=await self._viewer(request))


class Builders:
    """One builder per kind, sharing an engine's operation registry."""

    def __init__(self, runtime: Runtime, registry: Dict[str, Operation]) -> None:
        self.query = QueryBuilder(runtime, registry)
        self.public_query = PublicQueryBuilder(runtime, registry)
        self.mutation = MutationBuilder(runtime, registry)
        self.public_mutation = PublicMutationBuilder(runtime, registry)
