# scriptlisp runtime: built-ins, script execution and entry points

import asyncio
import inspect
import operator
import collections.abc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Literal, Dict, Iterable

from scriptlisp.lisp_datatypes import (
    Symbol, Keyword, Vector, Closure, HostRef, Environment,
    ParseError, UnboundSymbolError, ArityError, LispTypeError,
    HostOperationNotFound, HostOperationError, RemoteLoadingDisabled, FetchError,
    is_truthy, lisp_bool, is_number, is_return, unwrap_return,
)
from scriptlisp.lisp_reader import read_all, read_program
from scriptlisp.lisp_interpreter import Evaluator, DEFINING_FORMS
from scriptlisp.lisp_printer import Printer
from scriptlisp.lisp_host import HostBridge, ScriptMethods, from_host
from scriptlisp.lisp_file import VirtualFiles, MemoryVirtualFiles
from scriptlisp.lisp_loader import ModuleLoader
from scriptlisp.lisp_serialize import serialize, deserialize
from scriptlisp.lisp_scripts import DefaultScripts

# Built-ins whose Lisp names are not valid Python identifiers
OPERATORS = {
    "+": "add",
    "-": "sub",
    "*": "mul",
    "/": "div",
    "=": "eq",
    "/=": "neq",
    "<": "lt",
    ">": "gt",
    "<=": "lte",
    ">=": "gte",
}

_printer = Printer()


def _numbers(name: str, args) -> list:
    for a in args:
        if not is_number(a):
            raise LispTypeError(f"({name}) expects numbers, got {_printer.pformat(a)}")
    return list(args)


def _text(name: str, value) -> str:
    if not isinstance(value, str):
        raise LispTypeError(f"({name}) expects a string, got {_printer.pformat(value)}")
    return value


def _mapping(name: str, value) -> collections.abc.Mapping:
    if value is None:
        return {}
    if not isinstance(value, collections.abc.Mapping):
        raise LispTypeError(f"({name}) expects a map, got {_printer.pformat(value)}")
    return value


def _seq(value) -> list:
    """Sequence argument as a Python list; nil is the empty list."""
    match value:
        case None:
            return []
        case HostRef(obj=obj):
            return _seq(obj)
        case str():
            return list(value)
        case collections.abc.Mapping():
            return [Vector([k, v]) for k, v in value.items()]
        case collections.abc.Iterable():
            return list(value)
        case _:
            raise LispTypeError(f"not a sequence: {_printer.pformat(value)}")


def _chain(name: str, op, args) -> Optional[bool]:
    _numbers(name, args)
    return lisp_bool(all(op(a, b) for a, b in zip(args, args[1:])))


def _nil_if_empty(items: list):
    return items if items else None


def _map_key(key):
    if isinstance(key, Symbol):
        return Keyword(key.name)
    return key


# ===================================================================
# The Standard Library
# ===================================================================
class StdLib:
    """Python implementations of the scriptlisp built-in functions.

    A method `_name` is bound as `name` (underscores become dashes, a
    trailing `_q` becomes `?`); OPERATORS maps the symbolic names.
    Methods that need the calling Evaluator or Environment declare a
    keyword-only `evaluator` or `env` parameter.
    """

    def bindings(self) -> Dict[str, Any]:
        out = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                lisp_name = name[1:].replace('_', '-')
                if lisp_name.endswith('-q'):
                    lisp_name = lisp_name[:-2] + '?'
                out[lisp_name] = member
        for op, method in OPERATORS.items():
            out[op] = out.pop(method)
        return out

    # --- Math ---
    def _add(self, *args):
        return sum(_numbers("+", args), 0)

    def _sub(self, first, *rest):
        _numbers("-", (first, *rest))
        if not rest:
            return -first
        for x in rest:
            first -= x
        return first

    def _mul(self, *args):
        result = 1
        for x in _numbers("*", args):
            result *= x
        return result

    def _div(self, first, *rest):
        _numbers("/", (first, *rest))
        if not rest:
            rest, first = (first,), 1
        for x in rest:
            # Integers stay integers while the division is exact
            if isinstance(first, int) and isinstance(x, int) and x != 0 and first % x == 0:
                first = first // x
            else:
                first = first / x
        return first

    def _mod(self, a, b):
        return _numbers("mod", (a, b))[0] % b

    def _eq(self, first, *rest):
        return lisp_bool(all(first == x for x in rest))

    def _neq(self, a, b):
        return lisp_bool(a != b)

    def _lt(self, *args): return _chain("<", operator.lt, args)
    def _gt(self, *args): return _chain(">", operator.gt, args)
    def _lte(self, *args): return _chain("<=", operator.le, args)
    def _gte(self, *args): return _chain(">=", operator.ge, args)

    def _not(self, x):
        return lisp_bool(not is_truthy(x))

    # --- Predicates ---
    def _even_q(self, n): return lisp_bool(_numbers("even?", (n,))[0] % 2 == 0)
    def _odd_q(self, n): return lisp_bool(_numbers("odd?", (n,))[0] % 2 == 1)
    def _zero_q(self, n): return lisp_bool(_numbers("zero?", (n,))[0] == 0)
    def _number_q(self, x): return lisp_bool(is_number(x))
    def _string_q(self, x): return lisp_bool(isinstance(x, str) and not isinstance(x, Keyword))
    def _symbol_q(self, x): return lisp_bool(isinstance(x, Symbol))
    def _keyword_q(self, x): return lisp_bool(isinstance(x, Keyword))
    def _list_q(self, x): return lisp_bool(type(x) is list)
    def _vector_q(self, x): return lisp_bool(isinstance(x, Vector))
    def _map_q(self, x): return lisp_bool(isinstance(x, collections.abc.Mapping))
    def _fn_q(self, x): return lisp_bool(isinstance(x, (Closure, Keyword)) or callable(x))
    def _nil_q(self, x): return lisp_bool(x is None or (type(x) is list and not x))

    # --- Sequences ---
    def _range(self, *args):
        return list(range(*_numbers("range", args)))

    def _list(self, *items):
        return list(items)

    def _vector(self, *items):
        return Vector(items)

    def _cons(self, x, seq):
        return [x, *_seq(seq)]

    def _first(self, seq):
        items = _seq(seq)
        return items[0] if items else None

    def _car(self, seq):
        return self._first(seq)

    def _rest(self, seq):
        return _nil_if_empty(_seq(seq)[1:])

    def _cdr(self, seq):
        return self._rest(seq)

    def _nth(self, seq, n):
        items = _seq(seq)
        return items[n] if 0 <= n < len(items) else None

    def _last(self, seq):
        items = _seq(seq)
        return items[-1] if items else None

    def _count(self, seq):
        return len(_seq(seq))

    def _length(self, seq):
        return self._count(seq)

    def _append(self, *seqs):
        out = []
        for s in seqs:
            out.extend(_seq(s))
        return out

    def _concat(self, *seqs):
        return self._append(*seqs)

    def _reverse(self, seq):
        return list(reversed(_seq(seq)))

    def _sort(self, seq):
        return sorted(_seq(seq))

    # --- Higher-order ---
    async def _map(self, f, *seqs, evaluator):
        if not seqs:
            raise ArityError("map", "at least 2", 1)
        out = []
        for items in zip(*(_seq(s) for s in seqs)):
            out.append(await evaluator.apply(f, items))
        return out

    async def _filter(self, f, seq, *, evaluator):
        out = []
        for x in _seq(seq):
            if is_truthy(await evaluator.apply(f, [x])):
                out.append(x)
        return out

    async def _mapcan(self, f, seq, *, evaluator):
        out = []
        for x in _seq(seq):
            r = await evaluator.apply(f, [x])
            if r is None:
                continue
            if not isinstance(r, list):
                raise LispTypeError(f"(mapcan) function must return a list or nil, got {_printer.pformat(r)}")
            out.extend(r)
        return out

    async def _reduce(self, f, *args, evaluator):
        if len(args) == 1:
            items = _seq(args[0])
            if not items:
                return await evaluator.apply(f, [])
            acc, items = items[0], items[1:]
        elif len(args) == 2:
            acc, items = args[0], _seq(args[1])
        else:
            raise ArityError("reduce", "2 or 3", len(args) + 1)
        for x in items:
            acc = await evaluator.apply(f, [acc, x])
        return acc

    async def _apply(self, f, *args, evaluator):
        if not args:
            return await evaluator.apply(f, [])
        return await evaluator.apply(f, [*args[:-1], *_seq(args[-1])])

    async def _some(self, f, seq, *, evaluator):
        for x in _seq(seq):
            r = await evaluator.apply(f, [x])
            if is_truthy(r):
                return r
        return None

    def _identity(self, x):
        return x

    async def _eval(self, form, *, evaluator):
        return await evaluator.eval(form, evaluator.global_env)

    # --- Mappings ---
    def _new_map(self, *pairs):
        out = {}
        for pair in pairs:
            if not isinstance(pair, list) or len(pair) != 2:
                raise LispTypeError(f"(new-map) expects (key value) pairs, got {_printer.pformat(pair)}")
            out[_map_key(pair[0])] = pair[1]
        return out

    def _get(self, coll, key, default=None):
        match coll:
            case None:
                return default
            case collections.abc.Mapping():
                return coll.get(_map_key(key), default)
            case list() | str():
                return coll[key] if isinstance(key, int) and 0 <= key < len(coll) else default
            case HostRef(obj=collections.abc.Mapping() as obj):
                return from_host(obj.get(str.__str__(key) if isinstance(key, str) else key, default))
            case HostRef(obj=obj):
                return from_host(getattr(obj, str(key), default))
            case _:
                raise LispTypeError(f"(get) cannot index {_printer.pformat(coll)}")

    def _keys(self, m):
        return list(_mapping("keys", m).keys())

    def _vals(self, m):
        return list(_mapping("vals", m).values())

    def _assoc(self, m, *kvs):
        if len(kvs) % 2:
            raise ArityError("assoc", "a map and key/value pairs", len(kvs) + 1)
        out = dict(_mapping("assoc", m))
        for k, v in zip(kvs[0::2], kvs[1::2]):
            out[_map_key(k)] = v
        return out

    def _contains_q(self, m, key):
        if isinstance(m, collections.abc.Mapping):
            return lisp_bool(_map_key(key) in m)
        return lisp_bool(key in _seq(m))

    # --- Strings and output ---
    def _str(self, *args):
        return "".join(_printer.display(a) for a in args if a is not None)

    def _format(self, template, *args):
        try:
            return str(template).format(*[a.obj if isinstance(a, HostRef) else a for a in args])
        except (IndexError, KeyError) as e:
            raise LispTypeError(f"(format) no argument for placeholder {e}") from e

    def _print(self, *args, evaluator):
        evaluator.write(" ".join(_printer.display(a) for a in args))
        return None

    def _println(self, *args, evaluator):
        evaluator.write(" ".join(_printer.display(a) for a in args) + "\n")
        return None

    def _join(self, seq, separator=""):
        return str(separator).join(_printer.display(x) for x in _seq(seq))

    def _split(self, s, separator=None):
        return _text("split", s).split(separator)

    def _upper_case(self, s): return _text("upper-case", s).upper()
    def _lower_case(self, s): return _text("lower-case", s).lower()

    def _type_of(self, x):
        match x:
            case None: return "nil"
            case bool(): return "boolean"
            case int() | float(): return "number"
            case Keyword(): return "keyword"
            case str(): return "string"
            case Symbol(): return "symbol"
            case Vector(): return "vector"
            case list(): return "list"
            case collections.abc.Mapping(): return "map"
            case Closure(): return "fn"
            case HostRef(): return "host"
            case _ if callable(x): return "fn"
            case _: return type(x).__name__

    # --- Serialization ---
    def _to_json(self, x): return serialize(x, fmt="json", pretty=False)
    def _parse_json(self, s): return deserialize(s, fmt="json")
    def _to_yaml(self, x): return serialize(x, fmt="yaml")
    def _parse_yaml(self, s): return deserialize(s, fmt="yaml")
    def _parse_xml(self, s): return deserialize(s, fmt="xml")


# ===================================================================
# Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    output: str = ""
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """`error_message`, led by the parse position when the reader reported one."""
        if self.status == 'success':
            return ""
        message = self.error_message or "Unknown error"
        token = self.error_token or {}
        if token.get('line') is None:
            return message
        return f"Error on {_position(token['line'], token.get('col'))}: {message}"


def _position(line: int, col: Optional[int]) -> str:
    return f"line {line}" if col is None else f"line {line}, col {col}"


def _excerpt(source: str, e: ParseError, radius: int = 2) -> str:
    """Source lines around a ParseError, with a caret under its column."""
    lines = source.splitlines()
    if not 1 <= e.line <= len(lines):
        return ""
    first, last = max(1, e.line - radius), min(len(lines), e.line + radius)
    gutter = len(str(last))
    out = []
    for number in range(first, last + 1):
        marker = ">" if number == e.line else " "
        out.append(f"{marker} {number:>{gutter}} | {lines[number - 1]}")
        if number == e.line and e.col:
            out.append(f"  {'':>{gutter}} | {' ' * (e.col - 1)}^")
    return "\n".join(out)


def _stack_arg(arg) -> str:
    match arg:
        case Closure():
            return "fn"
        case list() if len(arg) > 3:
            return f"({len(arg)} items)"
        case collections.abc.Mapping():
            return "{...}"
        case _:
            return _printer.pformat(arg)


def _format_stacktrace(stack: List[Dict]) -> str:
    frames = []
    for frame in stack:
        name = frame.get('name') or '<call>'
        args_s = " ".join(_stack_arg(a) for a in frame.get('args') or [])
        frames.append(f"({name} {args_s})" if args_s else f"({name})")
    return "Lisp stacktrace: " + " ".join(frames) if frames else ""


class ScriptRunner:
    """Reads and evaluates scriptlisp source for a host.

    The root Environment holds built-ins, the prelude and host args and is
    frozen once the prelude has run. Every `evaluate`/`render` call gets its
    own top-level frame chained to it, so a `setq` of a root name only
    shadows it for that call.
    """

    _prelude_forms: Optional[List[Any]] = None

    def __init__(self, script_methods: Optional[Iterable[ScriptMethods]] = None,
                 args: Optional[Dict[str, Any]] = None,
                 virtual_files: Optional[VirtualFiles] = None,
                 loader: Optional[ModuleLoader] = None,
                 default_root: str = "",
                 load_prelude: bool = True):
        self.bridge = HostBridge([DefaultScripts(), *(script_methods or [])])
        self.virtual_files = virtual_files if virtual_files is not None else MemoryVirtualFiles()
        self.loader = loader if loader is not None else ModuleLoader(self.virtual_files, default_root)
        self._load_prelude = load_prelude
        # Most recently started evaluator; the runner itself never reads it back
        self.evaluator: Optional[Evaluator] = None

        self.root_env = Environment()
        for name, member in StdLib().bindings().items():
            self.root_env.define(Symbol(name), member)
        for name, value in (args or {}).items():
            self.root_env.define(Symbol(name), from_host(value))

    async def _initialize(self):
        """Evaluates prelude.l into the root environment, then freezes it."""
        if self.root_env.frozen:
            return
        if self._load_prelude:
            # Forms are read once per process and shared by every runner
            if ScriptRunner._prelude_forms is None:
                prelude_path = Path(__file__).parent / "prelude.l"
                ScriptRunner._prelude_forms = read_all(prelude_path.read_text(encoding="utf-8"))
            ev = Evaluator(self.bridge, self.loader)
            ev.global_env = self.root_env
            await ev.run(ScriptRunner._prelude_forms, self.root_env)
        self.root_env.frozen = True

    def new_evaluator(self) -> Evaluator:
        ev = Evaluator(self.bridge, self.loader)
        ev.global_env = Environment(self.root_env)
        return ev

    async def _execute(self, source: str, ev: Evaluator, on_value=None):
        page_vars, forms = read_program(source)
        await self._initialize()
        for name, value in page_vars.items():
            ev.global_env.define(Symbol(name), value)
        result = await ev.run(forms, ev.global_env, on_value)
        return unwrap_return(result), is_return(result)

    async def evaluate(self, source: str, evaluator: Optional[Evaluator] = None) -> Any:
        """Value of the first `return`, else of the last top-level form."""
        ev = evaluator or self.new_evaluator()
        self.evaluator = ev
        value, _ = await self._execute(source, ev)
        return value

    async def render(self, source: str, evaluator: Optional[Evaluator] = None) -> str:
        """Text written by `print`/`println` plus the display of top-level values."""
        ev = evaluator or self.new_evaluator()
        self.evaluator = ev

        def emit(form, value):
            if value is None or isinstance(value, Closure):
                return
            if isinstance(form, list) and form and form[0] in DEFINING_FORMS:
                return
            ev.write(_printer.display(value))

        value, returned = await self._execute(source, ev, emit)
        if returned and value is not None:
            ev.write(_printer.display(value))
        return "".join(ev.output)

    # -----------------------------------------------------------------
    # Error-reporting wrapper
    # -----------------------------------------------------------------
    def _format_parse_error(self, e: ParseError, source: str) -> str:
        if e.line is None:
            return f"ParseError: {e.message}"
        msg = f"ParseError: {e.message} ({_position(e.line, e.col)})"
        excerpt = _excerpt(source, e)
        return f"{msg}\n{excerpt}" if excerpt else msg

    def _format_runtime_error(self, e: Exception, ev: Evaluator) -> str:
        match e:
            case UnboundSymbolError():
                msg = f"UnboundSymbol: {e.name}"
            case ArityError():
                msg = f"ArityError: {e}"
            case HostOperationNotFound():
                msg = f"HostOperationNotFound: /{e.name}"
            case HostOperationError():
                msg = f"HostOperationError: /{e.name}: {e.cause!r}"
            case RemoteLoadingDisabled():
                msg = f"RemoteLoadingDisabled: {e.locator}"
            case FetchError():
                msg = f"FetchError: {e}"
            case LispTypeError():
                msg = f"TypeError: {e}"
            case _:
                msg = f"InternalError: {e!r}"

        if ev.current_node is not None:
            msg = f"{msg}\nIn form: {_printer.pformat(ev.current_node)}"
        st = _format_stacktrace(ev.call_stack)
        if st:
            msg += "\n" + st
        return msg

    async def handle_script(self, source_code: str, mode: Literal["evaluate", "render"] = "evaluate",
                            evaluator: Optional[Evaluator] = None) -> ExecutionResult:
        """Run a script and report the outcome instead of raising."""
        ev = evaluator or self.new_evaluator()
        try:
            if mode == 'render':
                output = await self.render(source_code, ev)
                value = None
            else:
                value = await self.evaluate(source_code, ev)
                output = "".join(ev.output)
            return ExecutionResult(
                status='success',
                value=value,
                output=output,
                side_effects=ev.side_effects,
            )
        except ParseError as e:
            msg = self._format_parse_error(e, source_code)
            token = {'line': e.line, 'col': e.col, 'offset': e.offset}
        except Exception as e:
            msg = self._format_runtime_error(e, ev)
            token = None

        ev.side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            status='error',
            output="".join(ev.output),
            error_message=msg,
            error_token=token,
            side_effects=ev.side_effects,
        )


# ===================================================================
# Synchronous conveniences
# ===================================================================

def evaluate_lisp(source: str, **runner_options) -> Any:
    """Evaluate `source` in a fresh runner from synchronous host code."""
    return asyncio.run(ScriptRunner(**runner_options).evaluate(source))


def render_lisp(source: str, **runner_options) -> str:
    """Render `source` in a fresh runner from synchronous host code."""
    return asyncio.run(ScriptRunner(**runner_options).render(source))
