"""
Cache policy and invalidation tables for PetCare resources.

Read routes are cached under a ``CachePolicy``; write routes delete the
patterns of one or more ``InvalidationRule``s. The invariant tying the two
tables together is that every write invalidates every key a coupled read
could have populated; ``find_uncovered_reads`` checks it.
"""

import fnmatch
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from fastapi import Request, Response

from shared.errors import CacheKeyError
from .keys import CacheTTL, KeyStrategy, KeyTemplate, RequestValues, Template

CacheCondition = Callable[[Request, Response], bool]


def is_ok(request: Request, response: Response) -> bool:
    """Default cache condition: 200 responses only."""
    return response.status_code == 200


@dataclass(frozen=True)
class CachePolicy:
    """TTL and key derivation for one cacheable resource view."""

    resource: str
    ttl: int = CacheTTL.SHORT
    key: Union[KeyTemplate, KeyStrategy] = KeyStrategy.BY_PATH_QUERY_USER
    condition: CacheCondition = is_ok

    def __post_init__(self):
        if not isinstance(self.ttl, int) or self.ttl <= 0:
            raise ValueError(f"Policy '{self.resource}' needs a positive integer TTL")

    def key_for(self, request: Request) -> str:
        return self.key.key_for(request)


@dataclass(frozen=True)
class InvalidationRule:
    """Glob patterns to delete after a resource is mutated.

    Pattern placeholders name resource identifiers (``{pet_id}``,
    ``{user_id}``). ``user_id`` is always the authenticated caller; other
    identifiers come from path params, then query params.
    """

    resource: str
    patterns: Tuple[str, ...]
    _templates: Tuple[Template, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_templates", tuple(Template(p) for p in self.patterns))

    def resolve(self, values: RequestValues) -> Tuple[List[str], List[CacheKeyError]]:
        """Concrete patterns for a request, plus one error per unresolvable pattern."""
        resolved: List[str] = []
        errors: List[CacheKeyError] = []
        for template in self._templates:
            try:
                resolved.append(template.render(values.identifier))
            except CacheKeyError as exc:
                exc.details["resource"] = self.resource
                errors.append(exc)
        return resolved, errors


CACHE_POLICIES: Dict[str, CachePolicy] = {
    "user_data": CachePolicy(
        resource="user_data",
        ttl=CacheTTL.MEDIUM,
        key=KeyTemplate("user:{user}:profile"),
    ),
    "pet_data": CachePolicy(
        resource="pet_data",
        ttl=CacheTTL.MEDIUM,
        key=KeyTemplate("pet:{path.pet_id}:u={user}", "user:{user}:pets"),
    ),
    "poop_records": CachePolicy(
        resource="poop_records",
        ttl=CacheTTL.SHORT,
        key=KeyTemplate("poop:{path.pet_id}:u={user}:page:{query.page|1}"),
    ),
    "community_posts": CachePolicy(
        resource="community_posts",
        ttl=CacheTTL.SHORT,
        key=KeyTemplate(
            "community:{query.category}:page:{query.page|1}",
            "community:page:{query.page|1}",
        ),
    ),
    "statistics": CachePolicy(
        resource="statistics",
        ttl=CacheTTL.LONG,
        key=KeyTemplate("stats:pet:{path.pet_id}:u={user}", "stats:user:{user}"),
    ),
}

# Prefix globs (``pet:42*``) also catch ``pet:420``; over-invalidation only
# costs a miss.
INVALIDATION_PATTERNS: Dict[str, InvalidationRule] = {
    "user": InvalidationRule("user", ("user:{user_id}*", "stats:user:{user_id}*")),
    "pet": InvalidationRule("pet", ("pet:{pet_id}*", "poop:{pet_id}*", "stats:pet:{pet_id}*")),
    "community": InvalidationRule("community", ("community:*",)),
    "analysis": InvalidationRule("analysis", ("poop:{pet_id}*", "stats:pet:{pet_id}*", "stats:analysis:*")),
}


def invalidation_rules(*resources: str) -> List[InvalidationRule]:
    """Compose named rules, e.g. ``invalidation_rules("pet", "user")``."""
    try:
        return [INVALIDATION_PATTERNS[name] for name in resources]
    except KeyError as exc:
        raise ValueError(f"Unknown invalidation resource {exc.args[0]!r}") from None


@dataclass(frozen=True)
class RouteBinding:
    """Declarative cache wiring for one route.

    A read binding names a policy; a write binding names the invalidation
    rules it triggers and the read bindings it affects.
    """

    name: str
    method: str
    path: str
    policy: Optional[str] = None
    invalidates: Tuple[str, ...] = ()
    affects: Tuple[str, ...] = ()

    @property
    def is_read(self) -> bool:
        return self.policy is not None

    def path_params(self) -> List[str]:
        return [name.split(":")[0] for name in Template(self.path).fields]


RESOURCE_BINDINGS: Tuple[RouteBinding, ...] = (
    RouteBinding("user_profile", "GET", "/api/users/me", policy="user_data"),
    RouteBinding("pet_list", "GET", "/api/pets", policy="pet_data"),
    RouteBinding("pet_detail", "GET", "/api/pets/{pet_id}", policy="pet_data"),
    RouteBinding("pet_records", "GET", "/api/records/pet/{pet_id}", policy="poop_records"),
    RouteBinding("community_posts", "GET", "/api/community/posts", policy="community_posts"),
    RouteBinding("user_statistics", "GET", "/api/statistics/me", policy="statistics"),
    RouteBinding("pet_statistics", "GET", "/api/statistics/pets/{pet_id}", policy="statistics"),
    RouteBinding(
        "update_profile", "PUT", "/api/users/me",
        invalidates=("user",),
        affects=("user_profile", "pet_list", "user_statistics"),
    ),
    RouteBinding(
        "create_pet", "POST", "/api/pets",
        invalidates=("user",),
        affects=("pet_list", "user_statistics"),
    ),
    RouteBinding(
        "update_pet", "PUT", "/api/pets/{pet_id}",
        invalidates=("pet", "user"),
        affects=("pet_detail", "pet_list", "pet_records", "pet_statistics", "user_statistics"),
    ),
    RouteBinding(
        "delete_pet", "DELETE", "/api/pets/{pet_id}",
        invalidates=("pet", "user"),
        affects=("pet_detail", "pet_list", "pet_records", "pet_statistics", "user_statistics"),
    ),
    RouteBinding(
        "create_analysis", "POST", "/api/analysis/pets/{pet_id}",
        invalidates=("analysis", "user"),
        affects=("pet_records", "pet_statistics", "user_statistics"),
    ),
    RouteBinding(
        "delete_record", "DELETE", "/api/records/pet/{pet_id}/{record_id}",
        invalidates=("analysis", "user"),
        affects=("pet_records", "pet_statistics", "user_statistics"),
    ),
    RouteBinding(
        "create_post", "POST", "/api/community/posts",
        invalidates=("community",),
        affects=("community_posts",),
    ),
    RouteBinding(
        "delete_post", "DELETE", "/api/community/posts/{post_id}",
        invalidates=("community",),
        affects=("community_posts",),
    ),
)


def _sample_values(read: RouteBinding, write: RouteBinding, policy: CachePolicy) -> RequestValues:
    """One user acting on one resource id, with every query placeholder filled."""
    path = {name: f"sample-{name}" for name in read.path_params() + write.path_params()}
    query = {}
    if isinstance(policy.key, KeyTemplate):
        for template in policy.key.alternatives:
            for name in template.fields:
                source, _, attr = name.partition(".")
                if source == "query":
                    query[attr] = f"sample-{attr}"
    return RequestValues(user_id="sample-user", path=path, query=query)


def find_uncovered_reads(
    bindings: Iterable[RouteBinding] = RESOURCE_BINDINGS,
    policies: Optional[Dict[str, CachePolicy]] = None,
) -> List[Tuple[str, str, str]]:
    """Return ``(write, read, key)`` triples a write would leave in the cache.

    Every key alternative of an affected read is rendered with the same
    sample user and resource ids the write sees, then matched against the
    write's resolved patterns.
    """
    policies = policies if policies is not None else CACHE_POLICIES
    bindings = list(bindings)
    by_name = {binding.name: binding for binding in bindings}
    uncovered: List[Tuple[str, str, str]] = []

    for write in bindings:
        if write.is_read:
            continue
        for read_name in write.affects:
            read = by_name.get(read_name)
            if read is None or read.policy not in policies:
                uncovered.append((write.name, read_name, "<unknown read binding>"))
                continue
            policy = policies[read.policy]
            if not isinstance(policy.key, KeyTemplate):
                uncovered.append((write.name, read_name, f"<{policy.key.value} key>"))
                continue

            values = _sample_values(read, write, policy)
            patterns: List[str] = []
            for rule in invalidation_rules(*write.invalidates):
                resolved, _ = rule.resolve(values)
                patterns.extend(resolved)

            for key in policy.key.sample_keys(values).values():
                if not any(fnmatch.fnmatchcase(key, pattern) for pattern in patterns):
                    uncovered.append((write.name, read_name, key))

    return uncovered
