"""
The script methods every ScriptRunner registers before the host's own.

`/fmt` formats positional `{0}` placeholders. `/json`, `/yaml` and `/xml`
serialize their argument or, called bare, the variables visible to the
calling script. `/template` renders a Mustache template with pystache.
"""
import collections.abc
from typing import Any, Dict, Optional

import pystache

from scriptlisp.lisp_datatypes import Closure
from scriptlisp.lisp_host import ScriptMethods, HostContext, script_method, block_filter, to_host
from scriptlisp.lisp_serialize import serialize


def _tmpl_normalize_value(v):
    """Convert Lisp values into plain Python types for Mustache."""
    if isinstance(v, collections.abc.Mapping):
        return {str(k): _tmpl_normalize_value(val) for k, val in v.items()}
    if isinstance(v, list):
        return [_tmpl_normalize_value(x) for x in v]
    return to_host(v)


def _visible_data(context: HostContext) -> Dict[str, Any]:
    """Script variables in scope, without functions."""
    return {
        name: to_host(value)
        for name, value in context.env.flatten().items()
        if not isinstance(value, Closure) and not callable(value)
    }


class DefaultScripts(ScriptMethods):

    @script_method
    def fmt(self, template: str, *args) -> str:
        return str(template).format(*args)

    @block_filter
    def json(self, value: Any = None, *, context: HostContext) -> str:
        data = _visible_data(context) if value is None else value
        return serialize(data, fmt="json")

    @block_filter
    def yaml(self, value: Any = None, *, context: HostContext) -> str:
        data = _visible_data(context) if value is None else value
        return serialize(data, fmt="yaml")

    @block_filter
    def xml(self, value: Any = None, root: str = "root", *, context: HostContext) -> str:
        data = _visible_data(context) if value is None else value
        return serialize(data, fmt="xml", xml_root=root)

    @block_filter
    def template(self, text: str, data: Optional[Any] = None, *, context: HostContext) -> str:
        view = _visible_data(context) if data is None else data
        renderer = pystache.Renderer(escape=lambda u: u)
        return renderer.render(str(text), _tmpl_normalize_value(view))
