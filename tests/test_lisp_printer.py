from scriptlisp.lisp_datatypes import Symbol, Keyword, Vector, Closure, HostRef, Environment, QUOTE
from scriptlisp.lisp_printer import Printer
from scriptlisp.lisp_reader import read


def test_pformat_atoms():
    p = Printer()
    assert p.pformat(None) == "nil"
    assert p.pformat(True) == "true"
    assert p.pformat(False) == "false"
    assert p.pformat(3) == "3"
    assert p.pformat(1.5) == "1.5"
    assert p.pformat('say "hi"\n') == '"say \\"hi\\"\\n"'
    assert p.pformat(Keyword("a")) == ":a"
    assert p.pformat(Symbol("x")) == "x"
    assert p.pformat(HostRef(42)) == "42"


def test_pformat_collections():
    p = Printer()
    assert p.pformat([Symbol("+"), 1, [QUOTE, Symbol("a")]]) == "(+ 1 'a)"
    assert p.pformat(Vector([1, "s"])) == '[1 "s"]'
    assert p.pformat({Keyword("a"): 1, "b c": 2}) == '{:a 1 "b c" 2}'


def test_pformat_reads_back():
    src = "(defn f [a b] (if (= a :x) '(1 2) [\"s\" nil]))"
    assert Printer().pformat(read(src)) == src


def test_pformat_callables():
    p = Printer()
    fn = Closure([Symbol("a")], [], Environment(), rest=Symbol("more"), name="f")
    assert p.pformat(fn) == "(fn f [a & more] ...)"
    assert p.pformat(Closure([], [], Environment())) == "(fn [] ...)"
    assert repr(fn) == "(fn f [a & more] ...)"

    def some_builtin():
        pass

    assert p.pformat(some_builtin) == "#<builtin some-builtin>"


def test_display_shows_bare_text():
    p = Printer()
    assert p.display("a\nb") == "a\nb"
    assert p.display(Keyword("k")) == "k"
    assert p.display([1, "s", Keyword("k")]) == "(1 s k)"
    assert p.display(None) == "nil"
