"""
Host Bridge: exposes host-registered operations to scripts as `/name` calls.

A host registers `ScriptMethods` instances. Their methods marked with
`@script_method` are plain callables; methods marked with `@block_filter`
also receive the calling `HostContext` (current Environment and Evaluator)
as the keyword-only `context` argument.
"""
import inspect
import collections.abc
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from scriptlisp.lisp_datatypes import (
    Symbol, Keyword, Vector, Closure, HostRef, Environment,
    LispError, HostOperationNotFound, HostOperationError,
)


def script_method(func=None, *, name: Optional[str] = None):
    """Mark a method as callable from scripts as `/name`."""
    def mark(f):
        f._lisp_host_kind = "method"
        f._lisp_host_name = name
        return f
    return mark(func) if func is not None else mark


def block_filter(func=None, *, name: Optional[str] = None):
    """Mark a method as a block filter: it receives `context=HostContext` too."""
    def mark(f):
        f._lisp_host_kind = "filter"
        f._lisp_host_name = name
        return f
    return mark(func) if func is not None else mark


@dataclass
class HostContext:
    """What a block filter sees of the evaluation that called it."""
    env: Environment
    evaluator: Any

    def get(self, name: str, default: Any = None) -> Any:
        sym = Symbol(name)
        return self.env.lookup(sym) if self.env.is_bound(sym) else default

    def write(self, text: str):
        self.evaluator.write(text)


class ScriptMethods:
    """Base class for objects whose marked methods scripts may call."""

    def script_operations(self) -> Dict[str, tuple]:
        ops = {}
        for attr, member in inspect.getmembers(self):
            if not callable(member):
                continue
            func = getattr(member, "__func__", member)
            kind = getattr(func, "_lisp_host_kind", None)
            if kind is None:
                continue
            lisp_name = getattr(func, "_lisp_host_name", None) or attr.replace("_", "-")
            ops[lisp_name] = (member, kind)
        return ops

# =================================================================
# Marshalling
# =================================================================

def to_host(value: Any) -> Any:
    """Lisp value -> the plain shape a host method expects."""
    match value:
        case HostRef(obj=obj):
            return obj
        case Keyword():
            return value.name
        case Symbol():
            return value.name
        case collections.abc.Mapping():
            return {str.__str__(k) if isinstance(k, str) else to_host(k): to_host(v) for k, v in value.items()}
        case list() | tuple():
            return [to_host(v) for v in value]
        case _:
            return value


def from_host(value: Any) -> Any:
    """Host result -> Lisp value; unknown objects become HostRef."""
    match value:
        case None | bool() | int() | float() | str():
            return value
        case Symbol() | Vector() | HostRef() | Closure():
            return value
        case collections.abc.Mapping():
            return {k: from_host(v) for k, v in value.items()}
        case list() | tuple():
            return [from_host(v) for v in value]
        case _:
            return HostRef(value)


class HostBridge:
    """Resolves `/name` to a registered host operation and invokes it."""

    def __init__(self, script_methods: Iterable[ScriptMethods] = ()):
        self.operations: Dict[str, tuple] = {}
        for methods in script_methods:
            self.register(methods)

    def register(self, methods: ScriptMethods):
        # Later registrations shadow earlier ones
        self.operations.update(methods.script_operations())

    def names(self) -> List[str]:
        return sorted(self.operations)

    def resolve(self, name: str):
        op = self.operations.get(name)
        if op is None:
            raise HostOperationNotFound(name)
        return op

    async def invoke(self, name: str, args: List[Any], context: HostContext) -> Any:
        func, kind = self.resolve(name)
        kwargs = {"context": context} if kind == "filter" else {}
        return await self.call_host(name, func, args, context, **kwargs)

    async def call_host(self, name: str, func, args: List[Any], context: HostContext, **kwargs) -> Any:
        """Invoke a host callable; awaitable results are awaited in place."""
        host_args = [to_host(a) for a in args]
        try:
            result = func(*host_args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except LispError:
            raise
        except Exception as e:
            raise HostOperationError(name, e) from e
        return from_host(result)
