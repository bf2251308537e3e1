"""
Declarative cache wiring for FastAPI routes.

Each route carries an ordered tuple of stages. A stage is an async callable
``(request, call_next) -> Response`` run around the route's own handler,
in the style of an HTTP middleware but scoped to one route.
"""

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple, Type, Union, TYPE_CHECKING

from fastapi import Request, Response
from fastapi.routing import APIRoute, APIRouter

from shared.logging import get_logger
from .invalidation import PatternSource, invalidate_cache_middleware
from .keys import CacheTTL
from .middleware import cache_middleware
from .policies import CACHE_POLICIES, CachePolicy, RESOURCE_BINDINGS, RouteBinding, invalidation_rules
from .store import CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


CallNext = Callable[[Request], Awaitable[Response]]
Stage = Callable[[Request, CallNext], Awaitable[Response]]


class StagedRoute(APIRoute):
    """APIRoute whose handler runs behind a chain of stages.

    Stages live on the class (see ``with_stages``) rather than on the
    instance, so any copy of the route made when its router is included
    into an app or another router keeps them.
    """

    stages: Tuple[Stage, ...] = ()

    @classmethod
    def with_stages(cls, *stages: Stage) -> Type["StagedRoute"]:
        return type(cls.__name__, (cls,), {"stages": tuple(stages)})

    def get_route_handler(self) -> Callable[[Request], Awaitable[Response]]:
        handler = super().get_route_handler()
        stages = self.stages
        if not stages:
            return handler

        async def run(index: int, request: Request) -> Response:
            if index == len(stages):
                return await handler(request)
            return await stages[index](request, lambda req: run(index + 1, req))

        async def staged_handler(request: Request) -> Response:
            return await run(0, request)

        return staged_handler


class StagedRouter(APIRouter):
    """Router with helpers to declare cached and invalidating routes."""

    def __init__(
        self,
        store: CacheStore,
        *,
        metrics: Optional["MetricsCollector"] = None,
        policies: Optional[Mapping[str, CachePolicy]] = None,
        default_ttl: int = CacheTTL.SHORT,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.store = store
        self.metrics = metrics
        self.default_ttl = default_ttl
        self.policies = dict(policies if policies is not None else CACHE_POLICIES)
        self.logger = get_logger("api.cache.routing")

    def staged(self, path: str, *stages: Stage, methods: Sequence[str], **kwargs: Any):
        """Register the decorated endpoint behind ``stages``."""
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.add_api_route(
                path,
                func,
                methods=list(methods),
                route_class_override=StagedRoute.with_stages(*stages),
                **kwargs,
            )
            return func
        return decorator

    def cached(self, path: str, policy: Union[str, CachePolicy, None] = None, *, methods: Sequence[str] = ("GET",), **kwargs: Any):
        """Register a read route behind a read-through cache stage."""
        if isinstance(policy, str):
            policy = self.policies[policy]
        ttl = None if policy is not None else self.default_ttl
        stage = cache_middleware(self.store, policy, ttl=ttl, metrics=self.metrics)
        return self.staged(path, stage, methods=methods, **kwargs)

    def invalidates(self, path: str, *sources: PatternSource, methods: Sequence[str] = ("POST",), **kwargs: Any):
        """Register a write route that invalidates ``sources`` after success."""
        stage = invalidate_cache_middleware(self.store, list(sources), metrics=self.metrics)
        return self.staged(path, stage, methods=methods, **kwargs)

    def bind(self, binding: RouteBinding, endpoint: Callable[..., Any], **kwargs: Any) -> None:
        """Register ``endpoint`` with the wiring a ``RouteBinding`` declares."""
        if binding.is_read:
            self.cached(binding.path, binding.policy, methods=(binding.method,), name=binding.name, **kwargs)(endpoint)
        else:
            self.invalidates(
                binding.path,
                *invalidation_rules(*binding.invalidates),
                methods=(binding.method,),
                name=binding.name,
                **kwargs,
            )(endpoint)
        self.logger.debug("Bound cached route", route=binding.name, method=binding.method, path=binding.path)

    def bind_handlers(
        self,
        handlers: Mapping[str, Callable[..., Any]],
        bindings: Sequence[RouteBinding] = RESOURCE_BINDINGS,
    ) -> Dict[str, RouteBinding]:
        """Bind every handler whose name appears in ``bindings``."""
        by_name = {binding.name: binding for binding in bindings}
        unknown = sorted(set(handlers) - set(by_name))
        if unknown:
            raise ValueError(f"No route binding for handlers: {', '.join(unknown)}")

        bound = {}
        for name, endpoint in handlers.items():
            self.bind(by_name[name], endpoint)
            bound[name] = by_name[name]
        return bound
