from scriptlisp.lisp_datatypes import (
    Symbol, Keyword, Vector, Closure, HostRef, Environment,
    LispError, ParseError, UnboundSymbolError, ArityError, LispTypeError,
    HostOperationNotFound, HostOperationError, RemoteLoadingDisabled, FetchError,
)
from scriptlisp.lisp_reader import read, read_all, read_program
from scriptlisp.lisp_host import ScriptMethods, HostContext, script_method, block_filter
from scriptlisp.lisp_file import VirtualFiles, MemoryVirtualFiles, FileSystemVirtualFiles
from scriptlisp.lisp_loader import ModuleLoader, ModuleCache, MODULE_CACHE
from scriptlisp.lisp_runtime import ScriptRunner, ExecutionResult, evaluate_lisp, render_lisp

__all__ = [
    "Symbol", "Keyword", "Vector", "Closure", "HostRef", "Environment",
    "LispError", "ParseError", "UnboundSymbolError", "ArityError", "LispTypeError",
    "HostOperationNotFound", "HostOperationError", "RemoteLoadingDisabled", "FetchError",
    "read", "read_all", "read_program",
    "ScriptMethods", "HostContext", "script_method", "block_filter",
    "VirtualFiles", "MemoryVirtualFiles", "FileSystemVirtualFiles",
    "ModuleLoader", "ModuleCache", "MODULE_CACHE",
    "ScriptRunner", "ExecutionResult", "evaluate_lisp", "render_lisp",
]
