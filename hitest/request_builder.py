"""Turn a (substituted) declarative Request into something httpx can send.

Construction problems raise RequestBuildError; the executor reports them as
Bogus without touching the network.
"""

from __future__ import annotations

import base64
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import httpx

from .exceptions import RequestBuildError
from .models import ParamsAs, Request

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; hitest)"
DEFAULT_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"
ALLOWED_SCHEMES = ("http", "https")
FILE_PREFIX = "@file:"
VFILE_PREFIX = "@vfile:"


@dataclass(slots=True)
class PreparedRequest:
    """A concrete request, ready to be built on a specific client."""

    method: str
    url: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    cookies: list[tuple[str, str]] = field(default_factory=list)
    content: bytes | None = None
    timeout: float = 10.0
    follow_redirects: bool = False

    def to_httpx(self, client: httpx.AsyncClient) -> httpx.Request:
        """Build on client so that its cookie jar contributes to the Cookie header.

        Raises RequestBuildError if httpx rejects the URL or a header.
        """
        try:
            req = client.build_request(
                self.method,
                self.url,
                headers=self.headers,
                content=self.content,
                timeout=self.timeout,
            )
        except (httpx.InvalidURL, UnicodeEncodeError, TypeError, ValueError) as e:
            raise RequestBuildError(f"cannot build request: {e}", context={"url": self.url}, original_error=e) from e
        if self.cookies:
            explicit = "; ".join(f"{k}={v}" for k, v in self.cookies)
            jar = req.headers.get("cookie")
            req.headers["Cookie"] = f"{jar}; {explicit}" if jar else explicit
        return req


def file_data(s: str, base_dir: str | Path, replace: Callable[[str], str] | None = None) -> tuple[bytes, str]:
    """Resolve @file:/@vfile: references.

    Returns (data, basename). "@file:path" reads path (relative to base_dir)
    verbatim, "@vfile:path" substitutes variables in the file content,
    "@file:@name:data" uses data inline with basename name. Anything else is
    returned as is with an empty basename.
    """
    if s.startswith(FILE_PREFIX):
        rest, substitute = s[len(FILE_PREFIX):], False
    elif s.startswith(VFILE_PREFIX):
        rest, substitute = s[len(VFILE_PREFIX):], True
    else:
        return s.encode("utf-8"), ""
    if not rest:
        raise RequestBuildError("missing filename in @[v]file: reference")
    if rest.startswith("@") and ":" in rest:
        name, _, inline = rest[1:].partition(":")
        return inline.encode("utf-8"), name
    path = Path(rest)
    if not path.is_absolute():
        path = Path(base_dir) / path
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise RequestBuildError("cannot read file", context={"path": str(path)}, original_error=e) from e
    if substitute and replace is not None:
        raw = replace(raw.decode("utf-8", errors="replace")).encode("utf-8")
    return raw, posixpath.basename(rest)

def _param_pairs(params: dict[str, list[str]]) -> list[tuple[str, str]]:
    # sorted by key, like url.Values.Encode
    return [(k, v) for k in sorted(params) for v in (params[k] or [""])]


def _is_file_ref(value: str) -> bool:
    return value.startswith(FILE_PREFIX) or value.startswith(VFILE_PREFIX)


def _has_header(headers: list[tuple[str, str]], name: str) -> bool:
    name = name.lower()
    return any(k.lower() == name for k, _ in headers)


def _check_field(what: str, name: str, value: str) -> None:
    """Header and cookie text goes on the wire as ASCII without line breaks."""
    try:
        name.encode("ascii")
        value.encode("ascii")
    except UnicodeEncodeError as e:
        raise RequestBuildError(f"non-ASCII character in {what} {name!r}", context={"value": value},
                                original_error=e) from e
    if "\r" in value or "\n" in value:
        raise RequestBuildError(f"line break in {what} {name!r}", context={"value": value})


def _encoded_body(method: str, url: str, **kwargs: Any) -> tuple[bytes, str]:
    """Body and Content-Type as httpx encodes data= or files=."""
    req = httpx.Request(method, url, **kwargs)
    return req.read(), req.headers["Content-Type"]


def build_request(
    req: Request,
    base_dir: str | Path = ".",
    replace: Callable[[str], str] | None = None,
    timeout: float = 10.0,
) -> tuple[PreparedRequest, str]:
    """Build a PreparedRequest from req whose strings are already substituted.

    Returns the prepared request and the textual body that will be sent
    (empty for bodiless requests).
    Raises RequestBuildError.
    """
    method = (req.method or "GET").upper()
    try:
        params_as = ParamsAs.parse(req.params_as)
    except ValueError as e:
        raise RequestBuildError(f"unknown parameter method {req.params_as!r}") from e

    url = req.url
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise RequestBuildError("malformed URL", context={"url": url}, original_error=e) from e
    if parsed.scheme not in ALLOWED_SCHEMES:
        raise RequestBuildError(f"unsupported URL scheme {parsed.scheme!r}", context={"url": url})
    if not parsed.host:
        raise RequestBuildError("URL without host", context={"url": url})

    headers: list[tuple[str, str]] = [(k, v) for k, vals in req.header.items() for v in vals]
    for k, v in headers:
        _check_field("header", k, v)
    for c in req.cookies:
        _check_field("cookie", c.name, c.value)
    prepared = PreparedRequest(
        method=method,
        url=url,
        headers=headers,
        cookies=[(c.name, c.value) for c in req.cookies],
        timeout=timeout,
        follow_redirects=req.follow_redirects,
    )
    sent_body = ""

    if req.params:
        if params_as in (ParamsAs.BODY, ParamsAs.MULTIPART):
            if method in ("GET", "HEAD"):
                raise RequestBuildError(f"{method} does not allow body or multipart parameters")
            if req.body:
                raise RequestBuildError("body used with body/multipart parameters")
        if params_as is ParamsAs.URL:
            prepared.url = str(parsed.copy_with(params=[*parsed.params.multi_items(), *_param_pairs(req.params)]))
        else:
            if params_as is ParamsAs.BODY:
                content, ctype = _encoded_body(method, url, data={k: params or [""] for k, params in
                                                                  sorted(req.params.items())})
            else:
                content, ctype = _encoded_body(method, url, files=_multipart_files(req.params, base_dir, replace))
            prepared.content = content
            sent_body = content.decode("utf-8", errors="replace")
            if not _has_header(headers, "content-type"):
                headers.append(("Content-Type", ctype))

    if req.body:
        content, _ = file_data(req.body, base_dir, replace)
        prepared.content = content
        sent_body = content.decode("utf-8", errors="replace")

    if req.basic_auth_user and not _has_header(headers, "authorization"):
        token = base64.b64encode(f"{req.basic_auth_user}:{req.basic_auth_pass}".encode("utf-8")).decode("ascii")
        headers.append(("Authorization", f"Basic {token}"))
    if not _has_header(headers, "accept"):
        headers.append(("Accept", DEFAULT_ACCEPT))
    if not _has_header(headers, "user-agent"):
        headers.append(("User-Agent", DEFAULT_USER_AGENT))
    return prepared, sent_body


def _multipart_files(
    params: dict[str, list[str]],
    base_dir: str | Path,
    replace: Callable[[str], str] | None,
) -> list[tuple[str, tuple[str | None, bytes]]]:
    """Multipart parts for httpx: ordinary fields first, file fields (@file:/@vfile:) last.

    Ordinary fields have no filename, so httpx renders them as plain form
    fields; file parts get a Content-Type guessed from their basename.
    """
    fields: list[tuple[str, tuple[str | None, bytes]]] = []
    files: list[tuple[str, tuple[str | None, bytes]]] = []
    for name, values in params.items():
        if values and _is_file_ref(values[0]):
            content, basename = file_data(values[0], base_dir, replace)
            files.append((name, (basename, content)))
            continue
        fields.extend((name, (None, v.encode("utf-8"))) for v in values or [""])
    return fields + files
