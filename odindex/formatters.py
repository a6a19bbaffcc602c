from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote, unquote
import posixpath
import re


def parse_date(date: Optional[str]) -> Optional[datetime]:
    if not date:
        return None
    return datetime.fromisoformat(date.replace("Z", "+00:00"))


def w3c_date(date) -> str:
    if isinstance(date, str):
        date = parse_date(date)
    if date is None:
        return ""
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return date.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def clean_path(path: str) -> str:
    """Normalize a request path, make it absolute and trim the trailing slash."""
    cleaned = posixpath.normpath(posixpath.join("/", path))
    # normpath keeps a leading "//"
    cleaned = "/" + cleaned.lstrip("/")
    return cleaned.rstrip("/") or "/"


def join_base(path: str, base: str = "/") -> str:
    joined = posixpath.normpath(posixpath.join("/", base.strip("/"), path.lstrip("/")))
    return "/" + joined.strip("/")


def encode_path(path: str, base: str = "/") -> str:
    """Graph path segment for ``root``, e.g. ``:/Documents/a%20b.txt``."""
    joined = join_base(path, base)
    if joined == "/":
        return ""
    return ":" + quote(joined)


def convert_path(path: str, base: str = "/") -> Optional[str]:
    """Graph ``parentReference.path`` to a site path, None when outside ``base``."""
    path = unquote(re.sub(r"^/drives?(/[^/]+)?/root:", "", path))
    base = "/" + base.strip("/")
    if base == "/":
        return path
    if path.lower() == base.lower():
        return ""
    if path.lower().startswith(base.lower() + "/"):
        return path[len(base):]
    return None
