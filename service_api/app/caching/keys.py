"""
Cache key derivation.

Keys are built either from a named ``KeyStrategy`` or from a ``KeyTemplate``
whose placeholders are filled from the request. Every substituted value is
percent-encoded, so request data can never introduce a ``:`` separator or a
glob metacharacter into a key or an invalidation pattern.
"""

import enum
import string
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, urlencode

from fastapi import Request

from shared.errors import CacheKeyError


class CacheTTL:
    """TTL presets in seconds."""

    SHORT = 300
    MEDIUM = 1800
    LONG = 3600
    VERY_LONG = 86400


ANONYMOUS_SEGMENT = "anon"

KeyGenerator = Callable[[Request], str]


def encode_segment(value: object) -> str:
    """Percent-encode a value for use inside a key or pattern."""
    return quote(str(value), safe="")


def request_user_id(request: Request) -> Optional[str]:
    """Authenticated user id set on ``request.state`` by the auth middleware."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict):
        user_id = user_info.get("user_id")
        if user_id not in (None, ""):
            return str(user_id)
    return None


@dataclass(frozen=True)
class RequestValues:
    """The request attributes keys and patterns may depend on."""

    user_id: Optional[str] = None
    path: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request: Request) -> "RequestValues":
        return cls(
            user_id=request_user_id(request),
            path={k: str(v) for k, v in request.path_params.items()},
            query=dict(request.query_params),
        )

    def lookup(self, source: str, name: Optional[str]) -> Optional[str]:
        if source == "user":
            return self.user_id
        if source == "path":
            return self.path.get(name) or None
        if source == "query":
            return self.query.get(name) or None
        raise CacheKeyError(f"Unknown key source '{source}'")

    def identifier(self, name: str) -> Optional[str]:
        """Resolve a resource identifier for an invalidation pattern.

        ``user_id`` only ever comes from the authenticated identity, never
        from path or query params.
        """
        if name == "user_id":
            return self.user_id
        return self.path.get(name) or self.query.get(name) or None


class KeyStrategy(enum.Enum):
    """Named key derivations for routes without a template."""

    BY_PATH = "by_path"
    BY_PATH_USER = "by_path_user"
    BY_PATH_QUERY_USER = "by_path_query_user"

    def key_for(self, request: Request) -> str:
        parts = ["api", request.method, quote(request.url.path, safe="/")]
        if self is KeyStrategy.BY_PATH:
            return ":".join(parts)

        user_id = request_user_id(request)
        parts.append(f"u={encode_segment(user_id)}" if user_id else ANONYMOUS_SEGMENT)
        if self is KeyStrategy.BY_PATH_USER:
            return ":".join(parts)

        parts.append(urlencode(sorted(request.query_params.multi_items())))
        return ":".join(parts)


def default_key_generator(request: Request) -> str:
    """Method + path + user (or ``anon``) + normalized query string."""
    return KeyStrategy.BY_PATH_QUERY_USER.key_for(request)


class Template:
    """A ``str.format``-style template over named request values.

    A field may carry a default after ``|``, e.g. ``{query.page|1}``.
    """

    def __init__(self, text: str):
        self.text = text
        self._parts: List[Tuple[str, Optional[str], Optional[str]]] = []
        for literal, field_name, _spec, _conversion in string.Formatter().parse(text):
            if field_name is None:
                self._parts.append((literal, None, None))
                continue
            if not field_name:
                raise ValueError(f"Positional placeholder in template '{text}'")
            name, _, default = field_name.partition("|")
            self._parts.append((literal, name, default or None))

    @property
    def fields(self) -> List[str]:
        return [name for _, name, _ in self._parts if name is not None]

    def render(self, lookup: Callable[[str], Optional[str]]) -> str:
        """Fill every field; raises ``CacheKeyError`` if one is missing."""
        out = []
        for literal, name, default in self._parts:
            out.append(literal)
            if name is None:
                continue
            value = lookup(name)
            if value in (None, ""):
                value = default
            if value is None:
                raise CacheKeyError(
                    f"Missing value for '{name}'", {"template": self.text}
                )
            out.append(encode_segment(value))
        return "".join(out)

    def __repr__(self) -> str:
        return f"Template({self.text!r})"


class KeyTemplate:
    """Alternative key templates; the first one the request can fill wins.

    Placeholders: ``{user}``, ``{path.<name>}``, ``{query.<name>}``. When no
    alternative resolves, the key falls back to ``fallback`` which is still
    user-scoped by default.
    """

    _SOURCES = ("user", "path", "query")

    def __init__(self, *alternatives: str, fallback: KeyStrategy = KeyStrategy.BY_PATH_QUERY_USER):
        if not alternatives:
            raise ValueError("KeyTemplate needs at least one template")
        self.alternatives = [Template(text) for text in alternatives]
        self.fallback = fallback
        for template in self.alternatives:
            for name in template.fields:
                source, _, attr = name.partition(".")
                if source not in self._SOURCES or (source != "user" and not attr):
                    raise ValueError(f"Unsupported placeholder '{{{name}}}' in '{template.text}'")

    @staticmethod
    def _lookup(values: RequestValues) -> Callable[[str], Optional[str]]:
        def lookup(name: str) -> Optional[str]:
            source, _, attr = name.partition(".")
            return values.lookup(source, attr or None)
        return lookup

    def resolve(self, values: RequestValues) -> Optional[str]:
        lookup = self._lookup(values)
        for template in self.alternatives:
            try:
                return template.render(lookup)
            except CacheKeyError:
                continue
        return None

    def key_for(self, request: Request) -> str:
        key = self.resolve(RequestValues.from_request(request))
        if key is None:
            return self.fallback.key_for(request)
        return key

    def sample_keys(self, values: RequestValues) -> Dict[str, str]:
        """Render every alternative that ``values`` can fill, keyed by template text."""
        lookup = self._lookup(values)
        keys = {}
        for template in self.alternatives:
            try:
                keys[template.text] = template.render(lookup)
            except CacheKeyError:
                continue
        return keys

    def __repr__(self) -> str:
        return f"KeyTemplate({', '.join(repr(t.text) for t in self.alternatives)})"
