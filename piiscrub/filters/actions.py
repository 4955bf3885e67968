"""
Filter actions: single, composable redaction rules.

Each action inspects one node of a payload (a mapping, a string, or an
opaque leaf) and either returns it unchanged, mutates it in place, or
returns a replacement.  Actions never recurse on their own; the walker in
:mod:`piiscrub.filters.base` drives them across nested containers.

Actions hold no per-call state and can be shared between threads, as long
as each thread filters its own payload.
"""

import re
from collections.abc import MutableMapping
from typing import Any, Optional, Pattern, Union
from urllib.parse import SplitResult, unquote, urlsplit, urlunsplit

from ..constants import DEFAULT_MAX_DEPTH, EVENT_MAX_DEPTH, FILTERED, TRUNCATED
from .models import CheckScope

__all__ = [
    "CommonPiiActions",
    "DepthFilter",
    "EmailFilter",
    "PiiFilter",
    "PiiRegexFilter",
    "UrlUsernamePasswordFilter",
]


# ── Depth limiting ───────────────────────────────────────────────


class DepthFilter:
    """Truncate the children of any container found at or beyond ``max_depth``.

    The container itself is kept; each of its immediate children becomes
    :data:`~piiscrub.constants.TRUNCATED`.  Run this first in a pipeline so
    later actions never see the truncated subtree.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH, *, name: str = "depth_filter"):
        self.max_depth = max_depth
        self.name = name

    def execute(self, val: Any, depth: int = 1) -> Any:
        if depth < self.max_depth or val is None:
            return val
        if isinstance(val, MutableMapping):
            for key in list(val.keys()):
                val[key] = TRUNCATED
        elif isinstance(val, list):
            for i in range(len(val)):
                val[i] = TRUNCATED
        return val

    def __repr__(self) -> str:
        return f"DepthFilter(max_depth={self.max_depth})"


# ── Pattern filters ──────────────────────────────────────────────


class PiiFilter:
    """Base class for filters that check mapping keys, values, or both.

    Subclasses decide how a string is rewritten (:meth:`replace_values`) and
    when a mapping key marks its whole value as PII (:meth:`filter_key`).
    """

    name = "pii_filter"

    def __init__(
        self,
        check_only: Union[CheckScope, str] = CheckScope.VALUES,
        replace_with: str = FILTERED,
        *,
        name: Optional[str] = None,
    ):
        self.check_only = CheckScope(check_only)
        self.replace_with = replace_with
        if name is not None:
            self.name = name

    @property
    def check_values(self) -> bool:
        return self.check_only.checks_values

    @property
    def check_keys(self) -> bool:
        return self.check_only.checks_keys

    def execute(self, val: Any, depth: int = 1) -> Any:
        if val is None:
            return val

        if isinstance(val, str):
            return self.replace_values(val)

        if isinstance(val, MutableMapping):
            for key in list(val.keys()):
                if self.filter_key(key):
                    val[key] = self.replace_with
                elif self.filter_value(val[key]):
                    val[key] = self.replace_values(val[key])

        # Lists and scalars are left to the walker.
        return val

    def filter_value(self, val: Any) -> bool:
        return self.check_values and isinstance(val, str)

    def replace_values(self, val: str) -> str:
        raise NotImplementedError

    def filter_key(self, key: Any) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, check_only={self.check_only.value!r})"


class PiiRegexFilter(PiiFilter):
    """Scrub whatever *regex* matches.

    Values have every match substituted with ``replace_with``; a key that
    matches (when keys are checked) replaces the entire value at that key,
    whatever its type.

    *flags* only applies when *regex* is a string; a compiled pattern keeps
    its own flags and passing both is a ``ValueError``.
    """

    name = "regex_filter"

    def __init__(
        self,
        regex: Union[str, Pattern[str]],
        check_only: Union[CheckScope, str] = CheckScope.VALUES,
        replace_with: str = FILTERED,
        *,
        flags: int = 0,
        name: Optional[str] = None,
    ):
        super().__init__(check_only, replace_with, name=name)
        if isinstance(regex, str):
            self.regex: Pattern[str] = re.compile(regex, flags)
        elif flags:
            raise ValueError("flags cannot be combined with a compiled pattern")
        else:
            self.regex = regex

    def replace_values(self, val: str) -> str:
        # Lambda so backslashes in the marker are never read as group refs
        return self.regex.sub(lambda _m: self.replace_with, val)

    def filter_key(self, key: Any) -> bool:
        return self.check_keys and isinstance(key, str) and self.regex.search(key) is not None


class UrlUsernamePasswordFilter(PiiFilter):
    """Strip the username / password portion of URL strings."""

    name = "url_username_password"

    def __init__(self, replace_with: str = FILTERED, *, name: Optional[str] = None):
        super().__init__(CheckScope.VALUES, replace_with, name=name)

    def replace_values(self, val: str) -> str:
        url = _try_parse_url(val)
        if url is None or not (url.username or url.password):
            return val

        userinfo, _, hostport = url.netloc.rpartition("@")
        username, sep, password = userinfo.partition(":")
        if username:
            username = self.replace_with
        if password:
            password = self.replace_with
        netloc = f"{username}{sep}{password}@{hostport}"
        return unquote(urlunsplit(url._replace(netloc=netloc)))

    def filter_key(self, key: Any) -> bool:
        return False


# RFC 5322 generalised email regex, ~99.99% accurate.
EMAIL_PATTERN: Pattern[str] = re.compile(
    r"(([^<>()\[\]\\.,;:\s@\"]+(\.[^<>()\[\]\\.,;:\s@\"]+)*)|(\".+\"))"
    r"@((\[[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\])"
    r"|(([a-zA-Z\-0-9]+\.)+[a-zA-Z]{2,}))",
    re.IGNORECASE,
)


class EmailFilter(PiiRegexFilter):
    """Strip email addresses, including ones embedded in a URL's path or query."""

    name = "email_values"

    def __init__(
        self,
        check_only: Union[CheckScope, str] = CheckScope.VALUES,
        replace_with: str = FILTERED,
        *,
        name: Optional[str] = None,
    ):
        super().__init__(EMAIL_PATTERN, check_only, replace_with, name=name)

    def replace_values(self, val: str) -> str:
        url = _try_parse_url(val)
        if url is not None:
            query = super().replace_values(url.query) if url.query else url.query
            path = super().replace_values(url.path) if url.path else url.path
            if query != url.query or path != url.path:
                val = unquote(urlunsplit(url._replace(path=path, query=query)))

        return super().replace_values(val)

    def filter_key(self, key: Any) -> bool:
        return False


def _try_parse_url(val: str) -> Optional[SplitResult]:
    """Split *val* as an absolute URL, or return ``None`` if it is not one.

    Square brackets are escaped before splitting so a marker already written
    into the userinfo (``http://[Filtered]@host``) does not trip the IPv6
    host check; callers ``unquote`` the recomposed URL.
    """
    if not val or any(c.isspace() for c in val):
        return None
    try:
        url = urlsplit(val.replace("[", "%5B").replace("]", "%5D"))
    except ValueError:
        return None
    if not url.scheme or not url.netloc:
        return None
    return url


# ── Catalog ──────────────────────────────────────────────────────

_IPV4_PATTERN = (
    r"(\b25[0-5]|\b2[0-4][0-9]|\b[01]?[0-9][0-9]?)"
    r"(\.(25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)){3}"
)

_IPV6_PATTERN = (
    r"(([0-9a-fA-F]{1,4}:){7,7}[0-9a-fA-F]{1,4}"
    r"|([0-9a-fA-F]{1,4}:){1,7}:"
    r"|([0-9a-fA-F]{1,4}:){1,6}:[0-9a-fA-F]{1,4}"
    r"|([0-9a-fA-F]{1,4}:){1,5}(:[0-9a-fA-F]{1,4}){1,2}"
    r"|([0-9a-fA-F]{1,4}:){1,4}(:[0-9a-fA-F]{1,4}){1,3}"
    r"|([0-9a-fA-F]{1,4}:){1,3}(:[0-9a-fA-F]{1,4}){1,4}"
    r"|([0-9a-fA-F]{1,4}:){1,2}(:[0-9a-fA-F]{1,4}){1,5}"
    r"|[0-9a-fA-F]{1,4}:((:[0-9a-fA-F]{1,4}){1,6})"
    r"|:((:[0-9a-fA-F]{1,4}){1,7}|:)"
    r"|fe80:(:[0-9a-fA-F]{0,4}){0,4}%[0-9a-zA-Z]{1,}"
    r"|::(ffff(:0{1,4}){0,1}:){0,1}((25[0-5]|(2[0-4]|1{0,1}[0-9]){0,1}[0-9])\.){3,3}"
    r"(25[0-5]|(2[0-4]|1{0,1}[0-9]){0,1}[0-9])"
    r"|([0-9a-fA-F]{1,4}:){1,4}:((25[0-5]|(2[0-4]|1{0,1}[0-9]){0,1}[0-9])\.){3,3}"
    r"(25[0-5]|(2[0-4]|1{0,1}[0-9]){0,1}[0-9]))"
)

_PII_KEYS_PATTERN = r"^oidc-.*|^remote-groups$|^uid$|^email_?|^ip_?|^user$|^user_?(id|name)$"

_TOKEN_PATTERN = r"[a-fA-F0-9]{32,}"


class CommonPiiActions:
    """The standard action catalog.

    Instances are shared; order them in a pipeline with ``depth_filter``
    first.
    """

    #: Limits objects to 5 levels of depth.
    depth_filter = DepthFilter(EVENT_MAX_DEPTH)

    #: Strips the user name / password out of URLs.
    url_username_password = UrlUsernamePasswordFilter()

    #: Strips emails, including inside URL paths and query strings.
    email_values = EmailFilter()

    #: IPv6 addresses in full, compressed, link-local and IPv4-mapped forms.
    ipv6_values = PiiRegexFilter(_IPV6_PATTERN, flags=re.IGNORECASE, name="ipv6_values")

    #: Dotted-quad IPv4 addresses.
    ipv4_values = PiiRegexFilter(_IPV4_PATTERN, flags=re.IGNORECASE, name="ipv4_values")

    #: Keys that commonly hold PII; the whole value is replaced.
    pii_keys = PiiRegexFilter(
        _PII_KEYS_PATTERN, CheckScope.KEYS, flags=re.IGNORECASE, name="pii_keys"
    )

    #: uid, session, oauth and other 32+ char hex tokens.
    token_values = PiiRegexFilter(_TOKEN_PATTERN, flags=re.IGNORECASE, name="token_values")
