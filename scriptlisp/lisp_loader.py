"""
Module loading for `(load ...)`.

Locators:
  lib1                  -> lib1.l under the default root (virtual files)
  "dir/lib2.l"          -> virtual path (absolute or relative to the default root)
  "gist:<id>"           -> every script file of the gist, in file-name order
  "gist:<id>/<file>"    -> one file of the gist
  "index:<key>[/<file>]"-> looked up in the host-provided index
  "http(s)://..."       -> fetched directly

Remote text goes through the process-wide ModuleCache: each identifier is
fetched once per process, later loads re-evaluate the cached text.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import re
import threading
import time
import collections.abc
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from scriptlisp.lisp_datatypes import (
    Symbol, LispError, LispTypeError, FetchError, RemoteLoadingDisabled,
)
from scriptlisp.lisp_file import VirtualFiles, MemoryVirtualFiles, normalize_path
from scriptlisp.lisp_reader import read_all
from scriptlisp.lisp_serialize import deserialize
from scriptlisp import lisp_http

SCRIPT_EXTENSIONS = (".l", ".lisp")

GIST_URL_RE = re.compile(r"^https?://gist\.github\.com/(?:[^/]+/)?([0-9a-fA-F]+)/?$")
INDEX_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")


@dataclass
class CacheEntry:
    identifier: str
    files: Dict[str, str]
    fetched_at: float
    symbols: Set[str] = field(default_factory=set)


class ModuleCache:
    """Thread-safe identifier -> CacheEntry store.

    Concurrent requests for an identifier that is being fetched wait on the
    same in-flight future, from any thread or event loop.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._pending: Dict[str, concurrent.futures.Future] = {}

    def get(self, identifier: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(identifier)

    def __contains__(self, identifier: str) -> bool:
        with self._lock:
            return identifier in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    async def get_or_fetch(self, identifier: str, fetch: Callable[[], Awaitable[Dict[str, str]]]) -> CacheEntry:
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is not None:
                return entry
            pending = self._pending.get(identifier)
            if pending is None:
                pending = self._pending[identifier] = concurrent.futures.Future()
                owner = True
            else:
                owner = False

        if not owner:
            return await asyncio.wrap_future(pending)

        try:
            files = await fetch()
        except BaseException as e:
            with self._lock:
                self._pending.pop(identifier, None)
            pending.set_exception(e)
            raise

        entry = CacheEntry(identifier, files, time.time())
        with self._lock:
            self._entries[identifier] = entry
            self._pending.pop(identifier, None)
        pending.set_result(entry)
        return entry


# Shared by every loader in the process unless a host passes its own
MODULE_CACHE = ModuleCache()


@dataclass
class LoadedSource:
    locator: str
    name: str
    text: str
    entry: Optional[CacheEntry] = None


class ModuleLoader:
    """Resolves `load` targets to source text and evaluates them."""

    # Process-wide switch; when False any remote locator raises RemoteLoadingDisabled
    allow_remote_loading: bool = True
    github_api_url: str = "https://api.github.com"

    def __init__(self, virtual_files: Optional[VirtualFiles] = None, default_root: str = "",
                 index: Any = None, cache: Optional[ModuleCache] = None, timeout: Optional[float] = None):
        self.virtual_files = virtual_files if virtual_files is not None else MemoryVirtualFiles()
        self.default_root = default_root
        # Either a mapping {key: locator} or the locator of a Markdown manifest
        self.index = index
        self.cache = cache if cache is not None else MODULE_CACHE
        self.timeout = timeout

    # -----------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------
    async def load(self, target: Any, evaluator) -> List[LoadedSource]:
        sources = await self.resolve(target)
        env = evaluator.global_env
        for source in sources:
            await self._evaluate(source, evaluator, env)
        return sources

    async def _evaluate(self, source: LoadedSource, evaluator, env):
        evaluator._dbg("load", source.locator, source.name)
        forms = read_all(source.text)
        before = dict(env.bindings)
        await evaluator.run(forms, env)
        if source.entry is not None:
            source.entry.symbols |= {
                sym.name for sym, val in env.bindings.items()
                if sym not in before or before[sym] is not val
            }

    # -----------------------------------------------------------------
    # Resolution
    # -----------------------------------------------------------------
    async def resolve(self, target: Any) -> List[LoadedSource]:
        match target:
            case Symbol():
                return [self._read_local(target.name + SCRIPT_EXTENSIONS[0])]
            case str():
                locator = str.__str__(target).strip()
            case _:
                raise LispTypeError(f"load expects a symbol or a string, got {target!r}")

        if locator.startswith("gist:"):
            return await self._resolve_gist(locator)
        if locator.startswith("index:"):
            return await self._resolve_index(locator)
        if locator.startswith("http://") or locator.startswith("https://"):
            return await self._resolve_url(locator)
        return [self._read_local(locator)]

    def _read_local(self, path: str) -> LoadedSource:
        vpath = normalize_path(path, self.default_root)
        try:
            text = self.virtual_files.read(vpath)
        except FileNotFoundError as e:
            raise FetchError(path, "file not found") from e
        return LoadedSource(path, vpath, text)

    def _check_remote(self, locator: str):
        if not ModuleLoader.allow_remote_loading:
            raise RemoteLoadingDisabled(locator)

    async def _fetch(self, identifier: str, locator: str, fetch) -> CacheEntry:
        self._check_remote(locator)
        try:
            return await self.cache.get_or_fetch(identifier, fetch)
        except LispError:
            raise
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise FetchError(locator, e) from e

    def _http_config(self) -> Dict[str, Any]:
        return {"timeout": self.timeout} if self.timeout is not None else {}

    async def _resolve_url(self, url: str) -> List[LoadedSource]:
        async def fetch():
            text = await lisp_http.http_get_text(url, self._http_config())
            return {url.rstrip("/").rsplit("/", 1)[-1] or url: text}

        entry = await self._fetch(url, url, fetch)
        return [LoadedSource(url, name, text, entry) for name, text in entry.files.items()]

    async def _fetch_gist(self, gist_id: str, locator: str) -> CacheEntry:
        async def fetch():
            api = f"{self.github_api_url.rstrip('/')}/gists/{gist_id}"
            payload = deserialize(await lisp_http.http_get_text(api, self._http_config()), fmt="json")
            files = {}
            for name, info in sorted((payload.get("files") or {}).items()):
                text = info.get("content")
                if text is None or info.get("truncated"):
                    text = await lisp_http.http_get_text(info["raw_url"], self._http_config())
                files[name] = text
            return files

        return await self._fetch(f"gist:{gist_id}", locator, fetch)

    async def _resolve_gist(self, locator: str) -> List[LoadedSource]:
        gist_id, _, file_name = locator[len("gist:"):].partition("/")
        if not gist_id:
            raise FetchError(locator, "missing gist id")
        entry = await self._fetch_gist(gist_id, locator)
        if file_name:
            if file_name not in entry.files:
                raise FetchError(locator, f"gist has no file {file_name!r}")
            return [LoadedSource(locator, file_name, entry.files[file_name], entry)]
        sources = [
            LoadedSource(locator, name, text, entry)
            for name, text in entry.files.items()
            if name.endswith(SCRIPT_EXTENSIONS)
        ]
        if not sources:
            raise FetchError(locator, "gist has no script files")
        return sources

    async def _index_entries(self, locator: str) -> Dict[str, str]:
        if self.index is None:
            raise FetchError(locator, "no index configured")
        if isinstance(self.index, collections.abc.Mapping):
            return dict(self.index)
        manifest = await self.resolve(str(self.index))
        return parse_index("\n".join(src.text for src in manifest))

    async def _resolve_index(self, locator: str) -> List[LoadedSource]:
        key, _, file_name = locator[len("index:"):].partition("/")
        entries = await self._index_entries(locator)
        if key not in entries:
            raise FetchError(locator, f"index has no entry {key!r}")
        target = gist_locator(entries[key])
        if file_name:
            if not target.startswith("gist:"):
                raise FetchError(locator, "only gist index entries can select a file")
            target = f"{target.split('/', 1)[0]}/{file_name}"
        return await self.resolve(target)


def gist_locator(url: str) -> str:
    """`https://gist.github.com/user/<id>` -> `gist:<id>`; anything else unchanged."""
    m = GIST_URL_RE.match(url.strip())
    return f"gist:{m.group(1)}" if m else url.strip()


def parse_index(text: str) -> Dict[str, str]:
    """Markdown manifest: every `[key](url)` link is an entry, first one wins."""
    entries: Dict[str, str] = {}
    for key, url in INDEX_LINK_RE.findall(text):
        entries.setdefault(key.strip(), url)
    return entries
