"""
The core scriptlisp interpreter: a tree-walking, async Evaluator.

Special forms are dispatched on the head symbol before any operand is
evaluated. Everything else is an application: Closures run in a frame
chained to their captured Environment, Python callables (built-ins and
host methods) are called and awaited, and `/name` heads go to the
Host Bridge.
"""
import os
import sys
import inspect
import collections.abc
from typing import Any, Callable, Dict, List, Optional

from scriptlisp.lisp_datatypes import (
    Symbol, Keyword, Vector, Closure, HostRef, Return, Environment,
    LispError, ArityError, LispTypeError, HostOperationNotFound,
    is_return, unwrap_return, is_truthy, QUOTE, AMPERSAND, AMP_REST,
)
from scriptlisp.lisp_host import HostContext

# Forms whose top-level value is a definition, not output, in render mode
DEFINING_FORMS = frozenset(Symbol(n) for n in ("defn", "defun", "def", "setq", "load"))

HOST_PREFIX = "/"

# Exceptions from Python built-ins that become Lisp type errors
_BUILTIN_FAULTS = (TypeError, ValueError, ArithmeticError)


def is_host_name(sym: Symbol) -> bool:
    # `/` and `/=` stay arithmetic; `/name` is a host operation
    name = sym.name
    return name.startswith(HOST_PREFIX) and len(name) > 1 and (name[1].isalpha() or name[1] == "_")


def callable_name(fn) -> str:
    if isinstance(fn, Closure):
        return fn.name or "fn"
    if isinstance(fn, Keyword):
        return f":{fn.name}"
    n = getattr(fn, "lisp_name", None) or getattr(fn, "__name__", None)
    if isinstance(n, str) and n:
        return n.lstrip("_").replace("_", "-")
    return "<call>"


class Evaluator:
    """The scriptlisp execution engine.

    One Evaluator serves one entry-point call: it owns the top-level frame,
    the output buffer and the call stack used for error traces.
    """
    def __init__(self, bridge=None, loader=None):
        self.bridge = bridge
        self.loader = loader
        self.global_env: Optional[Environment] = None
        self.output: List[str] = []
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.current_node = None
        self._injection_cache: Dict[Any, tuple] = {}
        self.special_forms: Dict[Symbol, Callable] = {
            Symbol("quote"): self._quote,
            Symbol("if"): self._if,
            Symbol("let"): self._let,
            Symbol("setq"): self._setq,
            Symbol("def"): self._def,
            Symbol("fn"): self._fn,
            Symbol("lambda"): self._fn,
            Symbol("defn"): self._defn,
            Symbol("defun"): self._defn,
            Symbol("doseq"): self._doseq,
            Symbol("return"): self._return,
            Symbol("load"): self._load,
            Symbol("bound?"): self._bound_q,
            Symbol("progn"): self._progn,
            Symbol("do"): self._progn,
            Symbol("cond"): self._cond,
            Symbol("and"): self._and,
            Symbol("or"): self._or,
            Symbol("when"): self._when,
            Symbol("unless"): self._unless,
            Symbol("while"): self._while,
        }

    # -----------------------------------------------------------------
    # Diagnostics
    # -----------------------------------------------------------------
    def _push_frame(self, name, func, args, call_site_node):
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'call_site': call_site_node,
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if os.environ.get("SCRIPTLISP_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def write(self, text: str):
        self.output.append(text)

    # -----------------------------------------------------------------
    # Evaluation
    # -----------------------------------------------------------------
    async def eval(self, node: Any, env: Environment) -> Any:
        """Public entry point for evaluation. Unwraps `return` sentinels."""
        self.current_node = node
        result = await self._eval(node, env)
        return unwrap_return(result)

    async def run(self, forms: List[Any], env: Environment, on_value: Optional[Callable] = None) -> Any:
        """Evaluate top-level forms in order, stopping at the first `return`.

        Returns the `Return` sentinel when one was hit, otherwise the last value.
        `on_value(form, value)` is called after each completed form.
        """
        result = None
        for form in forms:
            self.current_node = form
            result = await self._eval(form, env)
            if is_return(result):
                return result
            if on_value is not None:
                on_value(form, result)
        return result

    async def _eval(self, node: Any, env: Environment) -> Any:
        match node:
            case Symbol():
                return env.lookup(node)
            case Vector():
                items = Vector()
                for item in node:
                    value = await self._eval(item, env)
                    if is_return(value):
                        return value
                    items.append(value)
                return items
            case list():
                if not node:
                    return None
                return await self._eval_list(node, env)
            case _:
                return node

    async def _eval_list(self, node: list, env: Environment) -> Any:
        head = node[0]
        if isinstance(head, Symbol):
            form = self.special_forms.get(head)
            if form is not None:
                self._dbg("SPECIAL", head.name, "argc", len(node) - 1)
                return await form(node[1:], env)
            if is_host_name(head):
                args = await self._eval_args(node[1:], env)
                if is_return(args):
                    return args
                return await self._call_host(head.name[len(HOST_PREFIX):], args, env, node)

        func = await self._eval(head, env)
        if is_return(func):
            return func
        args = await self._eval_args(node[1:], env)
        if is_return(args):
            return args
        return await self.call(func, args, env, node)

    async def _eval_args(self, forms: List[Any], env: Environment):
        args = []
        for form in forms:
            value = await self._eval(form, env)
            if is_return(value):
                return value
            args.append(value)
        return args

    async def eval_body(self, forms: List[Any], env: Environment) -> Any:
        result = None
        for form in forms:
            result = await self._eval(form, env)
            if is_return(result):
                return result
        return result

    # -----------------------------------------------------------------
    # Application
    # -----------------------------------------------------------------
    async def call(self, func: Any, args: List[Any], env: Optional[Environment] = None, node: Any = None) -> Any:
        """Calls a callable (Closure, keyword, HostRef or Python function)."""
        name = callable_name(func)
        self._dbg("Evaluator.call", name, "argc", len(args))
        self._push_frame(name, func, args, node)
        match func:
            case Closure():
                frame = self._bind_params(func, args)
                result = await self.eval_body(func.body, frame)
            case Keyword():
                if not 1 <= len(args) <= 2:
                    raise ArityError(name, "1 or 2", len(args))
                result = self.keyword_get(func, args[0], args[1] if len(args) > 1 else None)
            case HostRef():
                if self.bridge is None or not callable(func.obj):
                    raise LispTypeError(f"host object is not callable: {func.obj!r}")
                result = await self.bridge.call_host(name, func.obj, args, self._host_context(env))
            case _ if callable(func):
                result = await self._call_python(func, name, args, env)
            case _:
                raise LispTypeError(f"not a function: {func!r}")
        self._pop_frame()
        return result

    async def apply(self, func: Any, args: List[Any], env: Optional[Environment] = None) -> Any:
        """Call from a built-in: `return` inside the callee yields a plain value here."""
        return unwrap_return(await self.call(func, list(args), env or self.global_env))

    def _bind_params(self, fn: Closure, args: List[Any]) -> Environment:
        n = len(fn.params)
        if len(args) < n or (fn.rest is None and len(args) > n):
            raise ArityError(fn.name or "fn", fn.arity, len(args))
        frame = Environment(fn.env)
        for param, arg in zip(fn.params, args):
            frame.define(param, arg)
        if fn.rest is not None:
            frame.define(fn.rest, list(args[n:]))
        return frame

    def _injections(self, func) -> tuple:
        key = getattr(func, "__func__", func)
        needs = self._injection_cache.get(key)
        if needs is None:
            try:
                params = inspect.signature(func).parameters
                needs = ("evaluator" in params, "env" in params)
            except (TypeError, ValueError):
                needs = (False, False)
            self._injection_cache[key] = needs
        return needs

    async def _call_python(self, func, name: str, args: List[Any], env: Optional[Environment]):
        wants_evaluator, wants_env = self._injections(func)
        kwargs = {}
        if wants_evaluator:
            kwargs["evaluator"] = self
        if wants_env:
            kwargs["env"] = env or self.global_env
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except LispError:
            raise
        except _BUILTIN_FAULTS as e:
            raise LispTypeError(f"({name}) {e}") from e
        return result

    async def _call_host(self, name: str, args: List[Any], env: Environment, node: Any) -> Any:
        if self.bridge is None:
            raise HostOperationNotFound(name)
        self._push_frame(HOST_PREFIX + name, None, args, node)
        result = await self.bridge.invoke(name, args, self._host_context(env))
        self._pop_frame()
        return result

    def _host_context(self, env: Optional[Environment]):
        return HostContext(env=env or self.global_env, evaluator=self)

    def keyword_get(self, kw: Keyword, target: Any, default: Any = None) -> Any:
        match target:
            case None:
                return default
            case collections.abc.Mapping():
                return target.get(kw, default)
            case HostRef(obj=obj):
                if isinstance(obj, collections.abc.Mapping):
                    return obj.get(kw.name, default)
                return getattr(obj, kw.name, default)
            case Environment():
                sym = Symbol(kw.name)
                return target.lookup(sym) if target.is_bound(sym) else default
            case _:
                raise LispTypeError(f"cannot look up :{kw.name} in {type(target).__name__}")

    # -----------------------------------------------------------------
    # Special forms
    # -----------------------------------------------------------------
    def _expect(self, name: str, args: list, low: int, high: Optional[int] = None):
        if len(args) < low or (high is not None and len(args) > high):
            expected = str(low) if high == low else (f"{low} to {high}" if high is not None else f"at least {low}")
            raise ArityError(name, expected, len(args))

    async def _quote(self, args, env):
        self._expect("quote", args, 1, 1)
        return args[0]

    async def _if(self, args, env):
        self._expect("if", args, 2, 3)
        cond = await self._eval(args[0], env)
        if is_return(cond):
            return cond
        if is_truthy(cond):
            return await self._eval(args[1], env)
        if len(args) == 3:
            return await self._eval(args[2], env)
        return None

    async def _let(self, args, env):
        self._expect("let", args, 1)
        bindings, body = args[0], args[1:]
        frame = Environment(env)
        for sym, value_form in self._binding_pairs(bindings):
            value = await self._eval(value_form, frame)
            if is_return(value):
                return value
            frame.define(sym, value)
        return await self.eval_body(body, frame)

    def _binding_pairs(self, bindings):
        if isinstance(bindings, Vector):
            if len(bindings) % 2:
                raise LispTypeError("let vector needs an even number of forms")
            pairs = list(zip(bindings[0::2], bindings[1::2]))
        elif isinstance(bindings, list):
            pairs = []
            for b in bindings:
                if isinstance(b, Symbol):
                    pairs.append((b, None))
                elif isinstance(b, list) and 1 <= len(b) <= 2:
                    pairs.append((b[0], b[1] if len(b) == 2 else None))
                else:
                    raise LispTypeError(f"malformed let binding: {b!r}")
        elif bindings is None:
            pairs = []
        else:
            raise LispTypeError(f"let expects a binding list, got {bindings!r}")
        for sym, _ in pairs:
            if not isinstance(sym, Symbol):
                raise LispTypeError(f"let can only bind symbols, got {sym!r}")
        return pairs

    async def _setq(self, args, env):
        if not args or len(args) % 2:
            raise ArityError("setq", "an even number of", len(args))
        value = None
        for sym, value_form in zip(args[0::2], args[1::2]):
            if not isinstance(sym, Symbol):
                raise LispTypeError(f"setq can only assign symbols, got {sym!r}")
            value = await self._eval(value_form, env)
            if is_return(value):
                return value
            env.setq(sym, value)
        return value

    async def _def(self, args, env):
        self._expect("def", args, 1, 2)
        sym = args[0]
        if not isinstance(sym, Symbol):
            raise LispTypeError(f"def can only bind symbols, got {sym!r}")
        value = await self._eval(args[1], env) if len(args) == 2 else None
        if is_return(value):
            return value
        env.define(sym, value)
        return sym

    def _parse_params(self, spec) -> tuple:
        if spec is None:
            spec = []
        if not isinstance(spec, list):
            raise LispTypeError(f"parameter list expected, got {spec!r}")
        params: List[Symbol] = []
        rest = None
        items = list(spec)
        while items:
            p = items.pop(0)
            if not isinstance(p, Symbol):
                raise LispTypeError(f"parameter must be a symbol, got {p!r}")
            if p is AMPERSAND or p is AMP_REST:
                if len(items) != 1 or not isinstance(items[0], Symbol):
                    raise LispTypeError("& must be followed by exactly one parameter")
                rest = items.pop(0)
                continue
            params.append(p)
        return params, rest

    async def _fn(self, args, env):
        self._expect("fn", args, 1)
        params, rest = self._parse_params(args[0])
        return Closure(params, list(args[1:]), env, rest=rest)

    async def _defn(self, args, env):
        self._expect("defn", args, 2)
        name = args[0]
        if not isinstance(name, Symbol):
            raise LispTypeError(f"defn name must be a symbol, got {name!r}")
        rest_args = list(args[1:])
        # optional docstring
        if isinstance(rest_args[0], str) and len(rest_args) > 1:
            rest_args = rest_args[1:]
        params, rest = self._parse_params(rest_args[0])
        env.define(name, Closure(params, rest_args[1:], env, rest=rest, name=name.name))
        return name

    async def _doseq(self, args, env):
        self._expect("doseq", args, 1)
        spec, body = args[0], args[1:]
        if not isinstance(spec, list) or len(spec) != 2 or not isinstance(spec[0], Symbol):
            raise LispTypeError("doseq expects (var seq)")
        var = spec[0]
        seq = await self._eval(spec[1], env)
        if is_return(seq):
            return seq
        for item in self.iterate(seq):
            frame = Environment(env)
            frame.define(var, item)
            result = await self.eval_body(body, frame)
            if is_return(result):
                return result
        return None

    def iterate(self, seq):
        match seq:
            case None:
                return []
            case str():
                return list(seq)
            case collections.abc.Mapping():
                return [Vector([k, v]) for k, v in seq.items()]
            case HostRef(obj=obj):
                return self.iterate(obj)
            case collections.abc.Iterable():
                return list(seq)
            case _:
                raise LispTypeError(f"not a sequence: {seq!r}")

    async def _return(self, args, env):
        self._expect("return", args, 0, 1)
        if not args:
            return Return(None)
        value = await self._eval(args[0], env)
        if is_return(value):
            return value
        return Return(value)

    async def _load(self, args, env):
        self._expect("load", args, 1, 1)
        target = args[0]
        if not isinstance(target, Symbol):
            target = await self._eval(target, env)
            if is_return(target):
                return target
        if self.loader is None:
            raise LispTypeError("load is not available in this context")
        await self.loader.load(target, self)
        return None

    async def _bound_q(self, args, env):
        self._expect("bound?", args, 1)
        for arg in args:
            if isinstance(arg, list) and len(arg) == 2 and arg[0] is QUOTE:
                arg = arg[1]
            if not isinstance(arg, Symbol) or not env.is_bound(arg):
                return None
        return True

    async def _progn(self, args, env):
        return await self.eval_body(args, env)

    async def _cond(self, args, env):
        for clause in args:
            if not isinstance(clause, list) or not clause:
                raise LispTypeError(f"malformed cond clause: {clause!r}")
            test = await self._eval(clause[0], env)
            if is_return(test):
                return test
            if is_truthy(test):
                if len(clause) == 1:
                    return test
                return await self.eval_body(clause[1:], env)
        return None

    async def _and(self, args, env):
        result = True
        for form in args:
            result = await self._eval(form, env)
            if is_return(result):
                return result
            if not is_truthy(result):
                return None
        return result

    async def _or(self, args, env):
        for form in args:
            result = await self._eval(form, env)
            if is_return(result) or is_truthy(result):
                return result
        return None

    async def _when(self, args, env):
        self._expect("when", args, 1)
        test = await self._eval(args[0], env)
        if is_return(test):
            return test
        return await self.eval_body(args[1:], env) if is_truthy(test) else None

    async def _unless(self, args, env):
        self._expect("unless", args, 1)
        test = await self._eval(args[0], env)
        if is_return(test):
            return test
        return None if is_truthy(test) else await self.eval_body(args[1:], env)

    async def _while(self, args, env):
        self._expect("while", args, 1)
        while True:
            test = await self._eval(args[0], env)
            if is_return(test):
                return test
            if not is_truthy(test):
                return None
            result = await self.eval_body(args[1:], env)
            if is_return(result):
                return result
