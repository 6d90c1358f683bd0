"""
A printer for Lisp values.

`pformat` writes readable source (strings quoted, keywords with their
colon); `display` is what `print`/`println` and render output show
(strings and keywords as bare text).
"""
import collections.abc

from scriptlisp.lisp_datatypes import Symbol, Keyword, Vector, Closure, HostRef, Return, Environment, QUOTE


class Printer:
    """Formats Lisp objects into source-like strings."""

    def __init__(self, readable: bool = True):
        self.readable = readable
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj)

    def display(self, obj) -> str:
        if isinstance(obj, str):
            return str.__str__(obj)
        return Printer(readable=False).pformat(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Keyword):
            return self._pformat_keyword
        if isinstance(obj, str):
            return self._pformat_str
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        if callable(obj):
            return self._pformat_builtin
        return lambda o: str(o) if not self.readable else repr(o)

    def _create_handlers(self):
        return {
            type(None): lambda o: "nil",
            bool: lambda o: "true" if o else "false",
            int: lambda o: repr(o),
            float: lambda o: repr(o),
            str: self._pformat_str,
            Keyword: self._pformat_keyword,
            Symbol: lambda o: o.name,
            list: self._pformat_list,
            Vector: self._pformat_vector,
            dict: self._pformat_dict,
            Closure: self._pformat_closure,
            HostRef: lambda o: str(o.obj),
            Return: lambda o: f"(return {self.pformat(o.value)})",
            Environment: lambda o: repr(o),
        }

    def _pformat_str(self, s):
        if not self.readable:
            return str.__str__(s)
        escaped = s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\t", "\\t")
        return f'"{escaped}"'

    def _pformat_keyword(self, k):
        return f":{k.name}" if self.readable else k.name

    def _pformat_list(self, items):
        if len(items) == 2 and items[0] is QUOTE:
            return "'" + self.pformat(items[1])
        return "(" + " ".join(self.pformat(x) for x in items) + ")"

    def _pformat_vector(self, items):
        return "[" + " ".join(self.pformat(x) for x in items) + "]"

    def _pformat_dict(self, d):
        parts = []
        for k, v in d.items():
            # String keys print as keywords when they can be read back as one
            if isinstance(k, str) and self._keyword_like(k):
                key = f":{str.__str__(k)}"
            else:
                key = self.pformat(k)
            parts.append(f"{key} {self.pformat(v)}")
        return "{" + " ".join(parts) + "}"

    def _keyword_like(self, s: str) -> bool:
        return bool(s) and not any(c.isspace() or c in '()[]{}";\',' for c in s)

    def _pformat_closure(self, fn):
        params = [p.name for p in fn.params]
        if fn.rest is not None:
            params += ["&", fn.rest.name]
        head = f"fn {fn.name}" if fn.name else "fn"
        return f"({head} [{' '.join(params)}] ...)"

    def _pformat_builtin(self, fn):
        name = getattr(fn, "lisp_name", None) or getattr(fn, "__name__", "<callable>")
        return f"#<builtin {name.lstrip('_').replace('_', '-')}>"
