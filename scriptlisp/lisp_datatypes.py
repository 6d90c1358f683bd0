"""
Defines the core data types for the scriptlisp runtime.

Values are mostly plain Python objects (None, True, int, float, str, list,
dict); this module adds the types Python has no natural counterpart for:
symbols, keywords, vectors, closures, host references, the `return`
sentinel, and the Environment chain used for lexical scoping. The error
taxonomy lives here too so every module can raise it without import cycles.
"""

import threading
import collections.abc
from typing import List, Dict, Any, Optional

# =================================================================
# Errors
# =================================================================

class LispError(Exception):
    """Base class for every condition raised while reading or evaluating."""
    pass


class ParseError(LispError):
    def __init__(self, message: str, offset: int = 0, line: Optional[int] = None, col: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.line = line
        self.col = col

    def __str__(self) -> str:
        if self.line is not None:
            return f"{self.message} (line {self.line}, col {self.col})"
        return self.message


class UnboundSymbolError(LispError):
    def __init__(self, name: str):
        super().__init__(f"unbound symbol: {name}")
        self.name = name


class ArityError(LispError):
    def __init__(self, name: str, expected: str, got: int):
        super().__init__(f"{name} expects {expected} argument(s), got {got}")
        self.name = name
        self.expected = expected
        self.got = got


class LispTypeError(LispError):
    pass


class HostOperationNotFound(LispError):
    def __init__(self, name: str):
        super().__init__(f"host operation not found: /{name}")
        self.name = name


class HostOperationError(LispError):
    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"host operation /{name} failed: {cause}")
        self.name = name
        self.cause = cause


class RemoteLoadingDisabled(LispError):
    def __init__(self, locator: str):
        super().__init__(f"remote loading disabled: {locator}")
        self.locator = locator


class FetchError(LispError):
    def __init__(self, locator: str, cause: Any = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to load {locator}{detail}")
        self.locator = locator
        self.cause = cause

# =================================================================
# Atoms
# =================================================================

_SYMBOL_LOCK = threading.Lock()


class Symbol:
    """An interned name. Two symbols with the same name are the same object."""
    __slots__ = ("name",)
    _table: Dict[str, 'Symbol'] = {}

    def __new__(cls, name: str):
        with _SYMBOL_LOCK:
            sym = cls._table.get(name)
            if sym is None:
                sym = object.__new__(cls)
                sym.name = name
                cls._table[name] = sym
            return sym

    def __reduce__(self):
        return (Symbol, (self.name,))

    def __repr__(self) -> str:
        return f"Symbol({self.name!r})"

    def __str__(self) -> str:
        return self.name


class Keyword(str):
    """A self-evaluating name written `:name`.

    Keywords are strings holding the bare name, so a mapping built from
    `{ :a 1 }` compares equal to `{"a": 1}` and host rows with string keys
    can be read with `(:a row)`.
    """
    _table: Dict[str, 'Keyword'] = {}

    def __new__(cls, name: str):
        if name.startswith(":"):
            name = name[1:]
        with _SYMBOL_LOCK:
            kw = cls._table.get(name)
            if kw is None:
                kw = str.__new__(cls, name)
                cls._table[name] = kw
            return kw

    @property
    def name(self) -> str:
        return str.__str__(self)

    def __reduce__(self):
        return (Keyword, (self.name,))

    def __repr__(self) -> str:
        return f":{self.name}"


class Vector(list):
    """A `[...]` literal. Behaves as a list; kept distinct for printing and `vector?`."""
    def __repr__(self) -> str:
        return f"Vector({list.__repr__(self)})"


QUOTE = Symbol("quote")
AMPERSAND = Symbol("&")
AMP_REST = Symbol("&rest")

# =================================================================
# Environment
# =================================================================

class Environment:
    """One frame of a lexical scope chain.

    Lookup walks from this frame to the root. Frames are shared, never
    copied: a closure keeps its defining frame alive by holding it.
    A `frozen` frame is never changed by `setq`; the new value shadows it
    in the frame directly below instead.
    """
    __slots__ = ("bindings", "parent", "frozen")

    def __init__(self, parent: Optional['Environment'] = None, bindings: Optional[Dict[Symbol, Any]] = None):
        self.bindings: Dict[Symbol, Any] = dict(bindings or {})
        self.parent = parent
        self.frozen = False

    def find_owner(self, sym: Symbol) -> Optional['Environment']:
        env = self
        while env is not None:
            if sym in env.bindings:
                return env
            env = env.parent
        return None

    def define(self, sym: Symbol, value: Any) -> Any:
        if not isinstance(sym, Symbol):
            raise LispTypeError(f"cannot bind non-symbol {sym!r}")
        if self.frozen:
            raise LispTypeError(f"cannot bind {sym.name}: frame is frozen")
        self.bindings[sym] = value
        return value

    def lookup(self, sym: Symbol) -> Any:
        owner = self.find_owner(sym)
        if owner is None:
            raise UnboundSymbolError(sym.name)
        return owner.bindings[sym]

    def is_bound(self, sym: Symbol) -> bool:
        return self.find_owner(sym) is not None

    def setq(self, sym: Symbol, value: Any) -> Any:
        """Mutate the nearest frame that binds `sym`, or define it here."""
        env, below = self, None
        while env is not None and sym not in env.bindings:
            below, env = env, env.parent
        if env is None:
            return self.define(sym, value)
        if env.frozen and below is not None:
            return below.define(sym, value)
        return env.define(sym, value)

    def root(self) -> 'Environment':
        env = self
        while env.parent is not None:
            env = env.parent
        return env

    def __contains__(self, sym: Any) -> bool:
        if isinstance(sym, str):
            sym = Symbol(sym)
        return self.is_bound(sym)

    def __getitem__(self, name: str) -> Any:
        return self.lookup(Symbol(name) if isinstance(name, str) else name)

    def __setitem__(self, name: str, value: Any):
        self.define(Symbol(name) if isinstance(name, str) else name, value)

    def keys(self) -> collections.abc.KeysView:
        """Names bound in this frame only."""
        return {s.name: None for s in self.bindings}.keys()

    def flatten(self) -> Dict[str, Any]:
        """All visible bindings as a plain dict, inner frames shadowing outer ones."""
        chain = []
        env = self
        while env is not None:
            chain.append(env)
            env = env.parent
        out: Dict[str, Any] = {}
        for env in reversed(chain):
            for sym, val in env.bindings.items():
                out[sym.name] = val
        return out

    def __repr__(self) -> str:
        names = ", ".join(s.name for s in self.bindings)
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Environment bindings=[{names}]{parent_id}>"

# =================================================================
# Callables and host values
# =================================================================

class Closure:
    """A function defined in Lisp with `fn`, `lambda` or `defn`.

    Bundles the parameter names, the body forms and the Environment
    the function was defined in.
    """
    def __init__(self, params: List[Symbol], body: List[Any], env: Environment,
                 rest: Optional[Symbol] = None, name: Optional[str] = None):
        self.params = params
        self.body = body
        self.env = env
        self.rest = rest
        self.name = name

    @property
    def arity(self) -> str:
        n = len(self.params)
        return f"at least {n}" if self.rest is not None else str(n)

    def __repr__(self) -> str:
        from scriptlisp.lisp_printer import Printer
        return Printer().pformat(self)


class HostRef:
    """Opaque handle to a host object (a db row, an XML document, a callable...)."""
    __slots__ = ("obj",)

    def __init__(self, obj: Any):
        self.obj = obj

    def __eq__(self, other):
        if isinstance(other, HostRef):
            return self.obj == other.obj
        return self.obj == other

    def __hash__(self):
        try:
            return hash(self.obj)
        except TypeError:
            return id(self.obj)

    def __str__(self) -> str:
        return str(self.obj)

    def __repr__(self) -> str:
        return f"HostRef({self.obj!r})"


class Return:
    """Sentinel produced by `(return x)`; unwinds to the top-level form loop."""
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"Return({self.value!r})"


def is_return(x) -> bool:
    return isinstance(x, Return)


def unwrap_return(x):
    return x.value if isinstance(x, Return) else x


def is_truthy(x) -> bool:
    # The empty list is nil
    return x is not None and x is not False and not (type(x) is list and not x)


def lisp_bool(flag) -> Optional[bool]:
    """Predicates answer True or Nil, never False."""
    return True if flag else None


def is_number(x) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)
