from __future__ import annotations

import json
from typing import Any
import collections.abc
from xml.parsers.expat import ExpatError

import yaml
import xmltodict

from scriptlisp.lisp_datatypes import Symbol, Keyword, HostRef, Closure


def _to_builtin(obj: Any) -> Any:
    """Lisp values -> plain JSON/YAML-friendly Python data."""
    if isinstance(obj, Keyword):
        return obj.name
    if isinstance(obj, str):
        return str.__str__(obj)
    if isinstance(obj, Symbol):
        return obj.name
    if isinstance(obj, HostRef):
        return _to_builtin(obj.obj)
    if isinstance(obj, Closure):
        return repr(obj)
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    # xmltodict returns dict subclasses too
    if isinstance(obj, collections.abc.Mapping):
        return {_to_builtin(k): _to_builtin(v) for k, v in obj.items()}
    return obj


# --------------------------
# Public API
# --------------------------

def deserialize(text: str, *, fmt: str) -> Any:
    """
    Parse json, yaml or xml text into dict/list/scalars.
    Malformed input raises ValueError.
    """
    f = (fmt or '').lower()
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"invalid YAML: {e}") from e
    if f == 'xml':
        try:
            return _to_builtin(xmltodict.parse(text))
        except ExpatError as e:
            raise ValueError(f"invalid XML: {e}") from e
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True,
              xml_root: str = "root") -> str:
    """
    Convert a Lisp value into a textual representation.
    - fmt: 'json' | 'yaml' | 'xml'
    - For XML, unless value is a single-key mapping it is wrapped under {xml_root: value}
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    if f == 'xml':
        if isinstance(built, dict) and len(built) == 1:
            root = built
        elif isinstance(built, list):
            root = {xml_root: {"item": built}}
        else:
            root = {xml_root: built}
        return xmltodict.unparse(root, pretty=pretty)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
]
