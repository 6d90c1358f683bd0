import asyncio

import pytest

from scriptlisp import (
    ScriptRunner, ScriptMethods, HostContext, script_method, block_filter,
    HostOperationNotFound, HostOperationError,
)
from scriptlisp.lisp_datatypes import Symbol, Keyword, Vector, HostRef
from scriptlisp.lisp_host import HostBridge, to_host, from_host


class Person:
    def __init__(self, name, age):
        self.name = name
        self.age = age


class DbScripts(ScriptMethods):
    def __init__(self):
        self.queries = []

    @script_method
    def db_select(self, sql):
        self.queries.append(sql)
        return [{"Name": "A", "Age": 1}, {"Name": "B", "Age": 2}]

    @script_method(name="dbSelect")
    def db_select_camel(self, sql):
        return self.db_select(sql)

    @script_method
    async def slow_add(self, a, b):
        await asyncio.sleep(0)
        return a + b

    @script_method
    def person(self, name):
        return Person(name, 30)

    @script_method
    def echo(self, value):
        return value

    @script_method
    def boom(self):
        raise RuntimeError("db down")

    @block_filter
    def caller_var(self, name, *, context: HostContext):
        return context.get(name, "missing")

    def not_exposed(self):
        return "hidden"


def test_script_operations_names():
    ops = DbScripts().script_operations()
    assert set(ops) == {"db-select", "dbSelect", "slow-add", "person", "echo", "boom", "caller-var"}
    assert ops["caller-var"][1] == "filter"
    assert ops["echo"][1] == "method"


def test_resolve_unknown_operation():
    bridge = HostBridge([DbScripts()])
    with pytest.raises(HostOperationNotFound):
        bridge.resolve("nope")


def test_later_registrations_shadow_earlier_ones():
    class Override(ScriptMethods):
        @script_method
        def echo(self, value):
            return "overridden"

    bridge = HostBridge([DbScripts(), Override()])
    func, _ = bridge.resolve("echo")
    assert func("x") == "overridden"


def test_marshalling():
    assert to_host(Keyword("a")) == "a" and type(to_host(Keyword("a"))) is str
    assert to_host(Symbol("s")) == "s"
    assert to_host(Vector([1, Keyword("b")])) == [1, "b"]
    assert to_host({Keyword("k"): HostRef(5)}) == {"k": 5}
    assert from_host((1, 2)) == [1, 2]
    person = from_host(Person("A", 1))
    assert isinstance(person, HostRef)
    assert from_host({"a": [Person("B", 2)]})["a"][0].obj.name == "B"


@pytest.mark.asyncio
async def test_keyword_over_host_rows():
    runner = ScriptRunner(script_methods=[DbScripts()])
    res = await runner.evaluate(
        '(return (map (fn [p] (:Name p)) (/dbSelect "select Name, Age from Person")))')
    assert res == ["A", "B"]


@pytest.mark.asyncio
async def test_async_host_method_is_awaited():
    runner = ScriptRunner(script_methods=[DbScripts()])
    assert await runner.evaluate("(/slow-add 2 3)") == 5


@pytest.mark.asyncio
async def test_host_objects_become_host_refs():
    runner = ScriptRunner(script_methods=[DbScripts()])
    res = await runner.evaluate('(setq p (/person "Ann")) (list (:name p) (get p "age"))')
    assert res == ["Ann", 30]


@pytest.mark.asyncio
async def test_keywords_reach_host_as_strings():
    runner = ScriptRunner(script_methods=[DbScripts()])
    res = await runner.evaluate("(/echo {:a [:x 1]})")
    assert res == {"a": ["x", 1]}
    assert not isinstance(list(res)[0], Keyword)


@pytest.mark.asyncio
async def test_block_filter_receives_context():
    runner = ScriptRunner(script_methods=[DbScripts()])
    assert await runner.evaluate('(setq x 7) (/caller-var "x")') == 7
    assert await runner.evaluate('(let [y 8] (/caller-var "y"))') == 8
    assert await runner.evaluate('(/caller-var "zzz")') == "missing"


@pytest.mark.asyncio
async def test_unknown_host_operation():
    runner = ScriptRunner()
    with pytest.raises(HostOperationNotFound) as exc:
        await runner.evaluate("(/nope 1)")
    assert exc.value.name == "nope"


@pytest.mark.asyncio
async def test_host_failure_is_wrapped():
    runner = ScriptRunner(script_methods=[DbScripts()])
    with pytest.raises(HostOperationError) as exc:
        await runner.evaluate("(/boom)")
    assert isinstance(exc.value.cause, RuntimeError)
    assert exc.value.name == "boom"


@pytest.mark.asyncio
async def test_host_callable_args_via_host_ref():
    def twice(x):
        return x * 2

    runner = ScriptRunner(args={"twice": HostRef(twice)})
    assert await runner.evaluate("(twice 21)") == 42


@pytest.mark.asyncio
async def test_division_is_not_a_host_call():
    runner = ScriptRunner()
    assert await runner.evaluate("(/ 6 3)") == 2
    assert await runner.evaluate("(/= 6 3)") is True


@pytest.mark.asyncio
async def test_fmt():
    runner = ScriptRunner()
    assert await runner.render('(/fmt "{0} + {1} = {2}" 1 2 (+ 1 2))') == "1 + 2 = 3"


@pytest.mark.asyncio
async def test_serialization_filters():
    runner = ScriptRunner()
    xml = await runner.render("(/xml {:a 1})")
    assert "<a>1</a>" in xml
    js = await runner.evaluate("(/json [1 2])")
    assert js.replace(" ", "").replace("\n", "") == "[1,2]"
    yml = await runner.evaluate("(/yaml {:a 1})")
    assert yml.strip() == "a: 1"


@pytest.mark.asyncio
async def test_serialization_filter_without_argument_uses_visible_variables():
    runner = ScriptRunner(args={"site": "docs"})
    js = await runner.evaluate("(setq n 1) (defn f [] 0) (/json)")
    assert '"n": 1' in js
    assert '"site": "docs"' in js
    assert '"f"' not in js
    assert '"map"' not in js


@pytest.mark.asyncio
async def test_template_filter():
    runner = ScriptRunner()
    assert await runner.evaluate('(/template "Hi {{name}}!" {:name "Ann"})') == "Hi Ann!"
    assert await runner.evaluate('(setq who "<b>") (/template "Hi {{who}}")') == "Hi <b>"
    res = await runner.evaluate('(/template "{{#items}}[{{.}}]{{/items}}" {:items [1 2]})')
    assert res == "[1][2]"
