import pytest

from scriptlisp import ScriptRunner
from scriptlisp.lisp_datatypes import (
    Symbol, Keyword, Vector, Closure, Environment,
    UnboundSymbolError, ArityError, LispTypeError,
)


async def evaluate(src, **runner_options):
    return await ScriptRunner(**runner_options).evaluate(src)


@pytest.mark.asyncio
async def test_empty_script_is_nil():
    assert await evaluate("") is None
    assert await evaluate("; only a comment") is None


@pytest.mark.asyncio
async def test_last_form_value_without_return():
    assert await evaluate("1 2 (+ 1 2)") == 3


@pytest.mark.asyncio
async def test_return_stops_top_level_evaluation():
    runner = ScriptRunner()
    res = await runner.evaluate("(setq a 1) (return (+ a 1)) (setq a 100)")
    assert res == 2
    assert runner.evaluator.global_env["a"] == 1


@pytest.mark.asyncio
async def test_return_inside_let_body():
    assert await evaluate("(return (let () (if (bound? id) 1 -1)))") == -1


@pytest.mark.asyncio
async def test_return_inside_function_ends_the_script():
    assert await evaluate("(defn f [] (return 5) 6) (f) 7") == 5


@pytest.mark.asyncio
async def test_return_inside_builtin_callback_is_a_plain_value():
    assert await evaluate("(map (fn [x] (return (* x 10))) '(1 2))") == [10, 20]


@pytest.mark.asyncio
async def test_quote():
    assert await evaluate("'(a b)") == [Symbol("a"), Symbol("b")]
    assert await evaluate("(quote x)") is Symbol("x")


@pytest.mark.asyncio
async def test_if_and_truthiness():
    assert await evaluate("(if nil 1 2)") == 2
    assert await evaluate("(if 0 1 2)") == 1
    assert await evaluate('(if "" 1 2)') == 1
    assert await evaluate("(if '() 1 2)") == 2
    assert await evaluate("(if nil 1)") is None


@pytest.mark.asyncio
async def test_let_with_vector_and_list_bindings():
    assert await evaluate("(let [a 1 b (+ a 1)] b)") == 2
    assert await evaluate("(let ((a 1) (b 2)) (+ a b))") == 3
    assert await evaluate("(let (x) x)") is None


@pytest.mark.asyncio
async def test_let_frame_is_discarded():
    with pytest.raises(UnboundSymbolError):
        await evaluate("(let [tmp 1] tmp) tmp")


@pytest.mark.asyncio
async def test_setq_mutates_nearest_binding():
    src = """
    (setq x 1)
    (defn bump [] (setq x (+ x 1)))
    (bump)
    (bump)
    x
    """
    assert await evaluate(src) == 3


@pytest.mark.asyncio
async def test_setq_defines_in_current_frame_when_unbound():
    assert await evaluate("(let () (setq y 5)) (bound? y)") is None
    assert await evaluate("(let () (setq y 5) y)") == 5


@pytest.mark.asyncio
async def test_setq_multiple_pairs():
    assert await evaluate("(setq a 1 b 2) (+ a b)") == 3


@pytest.mark.asyncio
async def test_def_returns_symbol():
    assert await evaluate("(def answer 42)") is Symbol("answer")
    assert await evaluate("(def answer 42) answer") == 42


@pytest.mark.asyncio
async def test_defn_with_zero_to_three_params():
    src = """
    (defn f0 [] 0)
    (defn f1 [a] a)
    (defn f2 [a b] (+ a b))
    (defn f3 [a b c] (+ a b c))
    (list (f0) (f1 1) (f2 1 2) (f3 1 2 3))
    """
    assert await evaluate(src) == [0, 1, 3, 6]


@pytest.mark.asyncio
async def test_defn_returns_symbol_and_binds_closure():
    runner = ScriptRunner()
    assert await runner.evaluate("(defn f [a] a)") is Symbol("f")
    fn = runner.evaluator.global_env["f"]
    assert isinstance(fn, Closure)
    assert fn.name == "f"


@pytest.mark.asyncio
async def test_defun_and_docstring():
    assert await evaluate('(defun sq (x) "squares x" (* x x)) (sq 4)') == 16


@pytest.mark.asyncio
async def test_lambda_and_fn_capture_defining_environment():
    src = """
    (defn make-adder [n] (fn [x] (+ x n)))
    (setq add2 (make-adder 2))
    (setq n 100)
    (add2 3)
    """
    assert await evaluate(src) == 5
    assert await evaluate("((lambda (x y) (* x y)) 3 4)") == 12


@pytest.mark.asyncio
async def test_closures_share_frames():
    src = """
    (defn counter []
      (let [n 0]
        (fn [] (setq n (+ n 1)))))
    (setq c (counter))
    (c) (c)
    (c)
    """
    assert await evaluate(src) == 3


@pytest.mark.asyncio
async def test_rest_params():
    assert await evaluate("(defn f [a & more] more) (f 1 2 3)") == [2, 3]
    assert await evaluate("(defn f [a &rest more] more) (f 1)") == []


@pytest.mark.asyncio
async def test_arity_error():
    with pytest.raises(ArityError) as exc:
        await evaluate("(defn f [a b] a) (f 1)")
    assert exc.value.name == "f"
    assert exc.value.got == 1
    with pytest.raises(ArityError):
        await evaluate("(defn f [] 0) (f 1)")


@pytest.mark.asyncio
async def test_unbound_symbol():
    with pytest.raises(UnboundSymbolError) as exc:
        await evaluate("(+ 1 nope)")
    assert exc.value.name == "nope"


@pytest.mark.asyncio
async def test_calling_a_non_function():
    with pytest.raises(LispTypeError):
        await evaluate("(1 2)")


@pytest.mark.asyncio
async def test_keyword_in_head_position():
    assert await evaluate("(:a {:a 1})") == 1
    assert await evaluate("(:b {:a 1})") is None
    assert await evaluate("(:b {:a 1} 9)") == 9
    assert await evaluate('(:Name (new-map (list "Name" "A")))') == "A"


@pytest.mark.asyncio
async def test_doseq_binds_each_element():
    runner = ScriptRunner()
    assert await runner.evaluate("(doseq (x '(1 2 3)) (println x))") is None
    assert runner.evaluator.output == ["1\n", "2\n", "3\n"]


@pytest.mark.asyncio
async def test_doseq_over_mapping_yields_pairs():
    src = """
    (setq out '())
    (doseq (kv {:a 1 :b 2}) (setq out (append out (list (last kv)))))
    out
    """
    assert await evaluate(src) == [1, 2]


@pytest.mark.asyncio
async def test_bound_is_a_conjunction():
    assert await evaluate("(if (bound? id) 1 -1)") == -1
    assert await evaluate("(setq id 2)(if (bound? id) 1 -1)") == 1
    assert await evaluate("(if (bound? id id2) 1 -1)") == -1
    assert await evaluate("(setq id 2)(if (bound? id id2) 1 -1)") == -1
    assert await evaluate("(setq id 2)(setq id2 3)(if (bound? id id2) 1 -1)") == 1
    assert await evaluate("(setq id 2)(bound? 'id)") is True


@pytest.mark.asyncio
async def test_cond_and_or_when_unless():
    assert await evaluate("(cond ((= 1 2) :a) ((= 1 1) :b))") == Keyword("b")
    assert await evaluate("(cond (nil 1))") is None
    assert await evaluate("(and 1 2 3)") == 3
    assert await evaluate("(and 1 nil 3)") is None
    assert await evaluate("(and)") is True
    assert await evaluate("(or nil 2)") == 2
    assert await evaluate("(or)") is None
    assert await evaluate("(when 1 2 3)") == 3
    assert await evaluate("(unless 1 2)") is None


@pytest.mark.asyncio
async def test_while_and_progn():
    src = """
    (setq i 0 total 0)
    (while (< i 5)
      (setq total (+ total i))
      (setq i (+ i 1)))
    (progn i total)
    """
    assert await evaluate(src) == 10


@pytest.mark.asyncio
async def test_vector_literal_evaluates_elements():
    res = await evaluate("[1 (+ 1 1) 3]")
    assert isinstance(res, Vector)
    assert res == [1, 2, 3]


@pytest.mark.asyncio
async def test_separate_calls_do_not_share_bindings():
    runner = ScriptRunner()
    await runner.evaluate("(setq z 1)")
    assert await runner.evaluate("(bound? z)") is None


@pytest.mark.asyncio
async def test_host_args_are_globals():
    runner = ScriptRunner(args={"nums3": [0, 1, 2], "name": "x"})
    assert await runner.evaluate("(count nums3)") == 3
    assert await runner.evaluate("name") == "x"


def test_environment_chain():
    root = Environment()
    root.define(Symbol("a"), 1)
    child = Environment(root)
    child.setq(Symbol("a"), 2)
    child.setq(Symbol("b"), 3)
    assert root["a"] == 2
    assert "b" not in root
    assert child.flatten() == {"a": 2, "b": 3}
    assert child.root() is root
    with pytest.raises(UnboundSymbolError):
        root.lookup(Symbol("missing"))


def test_frozen_frame_is_shadowed_not_mutated():
    root = Environment()
    root.define(Symbol("a"), 1)
    root.frozen = True
    top = Environment(root)
    inner = Environment(top)
    inner.setq(Symbol("a"), 2)
    assert root["a"] == 1
    assert top["a"] == 2
    inner.setq(Symbol("a"), 3)
    assert top["a"] == 3
    with pytest.raises(LispTypeError):
        root.define(Symbol("b"), 1)
    with pytest.raises(LispTypeError):
        root.setq(Symbol("a"), 5)
