"""
URL canonicalization, lookup expressions and hash prefixes

Prefixes are only meaningful when the local canonical form matches the one
the remote service hashed, so the rules below follow the Safe Browsing v4
canonicalization algorithm:

- remove tab, CR and LF characters and the fragment
- percent-unescape repeatedly, then re-escape control, non-ASCII, '#' and '%'
- lowercase the host, trim and collapse its dots, normalize IPv4 forms
- convert non-ASCII host labels with IDNA (UTS #46, non-transitional)
- resolve '.' and '..' path segments and collapse repeated slashes

Everything here is pure and synchronous.
"""

import hashlib
import re
from typing import List, NamedTuple, Optional
from urllib.parse import unquote_to_bytes

import idna

from .errors import MalformedURLError

DEFAULT_PREFIX_LENGTH = 4

# Protocol limits on lookup expression fan-out.
MAX_HOST_COMPONENTS = 5
MAX_PATH_COMPONENTS = 4

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://")
_PORT_RE = re.compile(r":\d*$")
_DOTS_RE = re.compile(r"\.{2,}")
_SLASHES_RE = re.compile(r"/{2,}")
_IPV4_COMPONENT_RE = re.compile(r"^(0x[0-9a-f]*|0[0-7]*|[1-9][0-9]*)$")

# Characters that would change how the host parses back.
_HOST_RESERVED = b"/?@:"
# Inside brackets the colons belong to an IPv6 literal.
_BRACKETED_RESERVED = b"/?@"


class HashedExpression(NamedTuple):
    """A lookup expression with its SHA-256 digest and leading prefix"""

    expression: str
    full_hash: bytes
    prefix: bytes

    def prefix_of(self, size: int) -> bytes:
        return self.full_hash[:size]


# ============= Escaping =============


def _unescape(value: str) -> bytes:
    """Percent-unescape until nothing changes"""
    data = value.encode("utf-8", "surrogateescape")
    while True:
        decoded = unquote_to_bytes(data)
        if decoded == data:
            return data
        data = decoded


def _escape(data: bytes, extra: bytes = b"") -> str:
    out = []
    for byte in data:
        if byte <= 0x20 or byte >= 0x7F or byte in b"#%" or byte in extra:
            out.append(f"%{byte:02X}")
        else:
            out.append(chr(byte))
    return "".join(out)


# ============= Host =============


def _parse_ipv4(host: str) -> Optional[str]:
    """
    Normalize hosts written as inet_aton-style IPv4 addresses.

    Accepts decimal, octal (leading 0) and hex (0x) components, and fewer
    than four components where the last one fills the remaining bytes.
    """
    parts = host.split(".")
    if not 1 <= len(parts) <= 4:
        return None
    values = []
    for part in parts:
        if not _IPV4_COMPONENT_RE.match(part):
            return None
        if part.startswith("0x"):
            values.append(int(part[2:] or "0", 16))
        elif part.startswith("0") and len(part) > 1:
            values.append(int(part, 8))
        else:
            values.append(int(part))

    *leading, last = values
    if any(value > 255 for value in leading):
        return None
    remaining = 4 - len(leading)
    if last >= 256**remaining:
        return None
    octets = leading + [(last >> (8 * i)) & 0xFF for i in reversed(range(remaining))]
    return ".".join(str(octet) for octet in octets)


def _idna_host(data: bytes) -> Optional[str]:
    """ASCII form of a non-ASCII host, None when it is not a valid name"""
    try:
        text = data.decode("utf-8")
        text = _DOTS_RE.sub(".", text.strip(".")).lower()
        return ".".join(
            label if label.isascii() else idna.encode(label, uts46=True).decode("ascii")
            for label in text.split(".")
        )
    except UnicodeError:
        return None


def _canonical_host(raw_host: str) -> str:
    data = _unescape(raw_host)
    try:
        host = data.decode("ascii")
    except UnicodeDecodeError:
        host = _idna_host(data)
        if host is None:
            data = _DOTS_RE.sub(b".", data.strip(b".")).lower()
            return _escape(data, _HOST_RESERVED)

    host = _DOTS_RE.sub(".", host.strip(".")).lower()
    if host.startswith("[") and host.endswith("]"):
        return _escape(host.encode("ascii"), _BRACKETED_RESERVED)
    ipv4 = _parse_ipv4(host)
    if ipv4:
        return ipv4
    return _escape(host.encode("ascii"), _HOST_RESERVED)


# ============= Path =============


def _canonical_path(raw_path: str) -> str:
    path = _unescape(raw_path or "/").decode("latin-1")
    if not path.startswith("/"):
        path = "/" + path
    path = _SLASHES_RE.sub("/", path)

    trailing = path.endswith("/") or path.endswith("/.") or path.endswith("/..")
    segments: List[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if segments:
                segments.pop()
            continue
        segments.append(segment)

    canonical = "/" + "/".join(segments)
    if trailing and segments:
        canonical += "/"
    return _escape(canonical.encode("latin-1"))


# ============= Public API =============


def canonicalize(url: str) -> str:
    """
    Canonicalize a URL the way the remote service does before hashing.

    Args:
        url: URL to canonicalize, with or without a scheme

    Returns:
        Canonical URL string, e.g. ``http://www.example.com/a/b?q``

    Raises:
        MalformedURLError: if the input has no usable host
    """
    if not isinstance(url, str):
        raise MalformedURLError(f"URL must be a string, got {type(url).__name__}")

    url = url.strip()
    url = url.replace("\t", "").replace("\r", "").replace("\n", "")
    url = url.split("#", 1)[0]
    if not url:
        raise MalformedURLError("Empty URL")

    match = _SCHEME_RE.match(url)
    if match:
        scheme = match.group(1).lower()
        rest = url[match.end() :]
    else:
        scheme = "http"
        rest = url

    authority_end = len(rest)
    for delimiter in "/?":
        position = rest.find(delimiter)
        if position != -1:
            authority_end = min(authority_end, position)
    authority = rest[:authority_end]
    remainder = rest[authority_end:]

    path, has_query, query = remainder.partition("?")

    authority = authority.rpartition("@")[2]
    if not authority.endswith("]"):
        authority = _PORT_RE.sub("", authority)

    host = _canonical_host(authority)
    if not host:
        raise MalformedURLError(f"URL has no host: {url!r}")

    canonical = f"{scheme}://{host}{_canonical_path(path)}"
    if has_query:
        canonical += "?" + _escape(_unescape(query))
    return canonical


def _split_canonical(canonical_url: str):
    match = _SCHEME_RE.match(canonical_url)
    if not match:
        raise MalformedURLError(f"Not a canonical URL: {canonical_url!r}")
    rest = canonical_url[match.end() :]
    host, slash, path_and_query = rest.partition("/")
    path, has_query, query = ("/" + path_and_query).partition("?")
    return host, path, query if has_query else None


def _host_variants(host: str) -> List[str]:
    if _parse_ipv4(host) == host or host.startswith("["):
        return [host]
    labels = host.split(".")
    variants = [host]
    # Last five labels down to the last two, skipping the bare TLD.
    for count in range(min(MAX_HOST_COMPONENTS, len(labels) - 1), 1, -1):
        variants.append(".".join(labels[-count:]))
    return variants


def _path_variants(path: str, query: Optional[str]) -> List[str]:
    variants = []
    if query is not None:
        variants.append(f"{path}?{query}")
    variants.append(path)
    variants.append("/")
    components = [component for component in path.split("/") if component]
    for count in range(1, min(MAX_PATH_COMPONENTS, len(components))):
        variants.append("/" + "/".join(components[:count]) + "/")
    return variants


def derive_expressions(canonical_url: str) -> List[str]:
    """
    Derive the host-suffix/path-prefix lookup expressions for a canonical URL.

    Returns at most 5 hosts x 6 paths expressions, deduplicated, most
    specific first.
    """
    host, path, query = _split_canonical(canonical_url)
    expressions = []
    seen = set()
    for host_variant in _host_variants(host):
        for path_variant in _path_variants(path, query):
            expression = host_variant + path_variant
            if expression not in seen:
                seen.add(expression)
                expressions.append(expression)
    return expressions


def hash_expression(
    expression: str, prefix_length: int = DEFAULT_PREFIX_LENGTH
) -> HashedExpression:
    """SHA-256 an expression and cut its prefix"""
    digest = hashlib.sha256(expression.encode("utf-8")).digest()
    return HashedExpression(expression, digest, digest[:prefix_length])


def lookup_hashes(
    url: str, prefix_length: int = DEFAULT_PREFIX_LENGTH
) -> List[HashedExpression]:
    """Canonicalize a URL and hash every lookup expression, deduplicated"""
    hashed = []
    seen = set()
    for expression in derive_expressions(canonicalize(url)):
        item = hash_expression(expression, prefix_length)
        if item.full_hash not in seen:
            seen.add(item.full_hash)
            hashed.append(item)
    return hashed
