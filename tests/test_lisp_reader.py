import pytest

from scriptlisp.lisp_datatypes import Symbol, Keyword, Vector, ParseError, QUOTE
from scriptlisp.lisp_reader import read, read_all, read_program, extract_page_vars, line_col


def test_atoms():
    assert read("42") == 42
    assert read("-3") == -3
    assert read("1.5") == 1.5
    assert read("nil") is None
    assert read("true") is True
    assert read('"hi"') == "hi"
    assert read("foo") is Symbol("foo")
    assert read("even?") is Symbol("even?")


def test_symbols_are_interned():
    a, b = read_all("abc abc")
    assert a is b


def test_keywords_are_strings_without_colon():
    kw = read(":name")
    assert isinstance(kw, Keyword)
    assert kw == "name"
    assert repr(kw) == ":name"
    assert kw is Keyword("name")


def test_lists_vectors_and_quote():
    assert read("(+ 1 2)") == [Symbol("+"), 1, 2]
    vec = read("[a b]")
    assert isinstance(vec, Vector)
    assert vec == [Symbol("a"), Symbol("b")]
    assert read("'x") == [QUOTE, Symbol("x")]
    assert read("'(1 2)") == [QUOTE, [1, 2]]
    assert read("()") == []


def test_commas_and_comments_are_whitespace():
    forms = read_all("""
    ; a comment
    [1, 2, 3] ; trailing
    (f)
    """)
    assert forms == [[1, 2, 3], [Symbol("f")]]


def test_string_escapes():
    assert read(r'"a\nb"') == "a\nb"
    assert read(r'"say \"hi\""') == 'say "hi"'
    # Unknown escapes are kept verbatim
    assert read(r'"\d+"') == r"\d+"


def test_map_literal_desugars_to_new_map():
    form = read("{ :a 1 b 2 }")
    assert form == [
        Symbol("new-map"),
        [Symbol("list"), Keyword("a"), 1],
        [Symbol("list"), Keyword("b"), 2],
    ]
    assert isinstance(form[2][1], Keyword)


def test_nested_map_literal():
    form = read("{:a {:b 1}}")
    inner = form[1][2]
    assert inner[0] is Symbol("new-map")


def test_map_literal_odd_forms_is_an_error():
    with pytest.raises(ParseError):
        read("{:a}")


@pytest.mark.parametrize("src", ["(1 2", "(a ]", ")", '"open', "1x2", "'"])
def test_malformed_source_raises_parse_error(src):
    with pytest.raises(ParseError):
        read_all(src)


def test_parse_error_carries_position():
    with pytest.raises(ParseError) as exc:
        read_all("(a)\n  (b ]")
    err = exc.value
    assert err.line == 2
    assert err.col == 6
    assert "line 2" in str(err)


def test_line_col():
    assert line_col("ab\ncd", 0) == (1, 1)
    assert line_col("ab\ncd", 4) == (2, 2)


def test_page_vars_html_comment():
    src = "<!--\nid 1\ntitle Hello World\n-->\n(f id)"
    page_vars, body = extract_page_vars(src)
    assert page_vars == {"id": "1", "title": "Hello World"}
    # Line numbers of the body are preserved
    assert body.count("\n") == src.count("\n")
    assert read_all(body) == [[Symbol("f"), Symbol("id")]]


def test_page_vars_line_comment_prefix():
    src = ";<!--\n; id 1\n;-->\n(f)"
    page_vars, forms = read_program(src)
    assert page_vars == {"id": "1"}
    assert forms == [[Symbol("f")]]


def test_no_page_vars():
    page_vars, forms = read_program("(f)")
    assert page_vars == {}
    assert forms == [[Symbol("f")]]


def test_unterminated_page_vars():
    with pytest.raises(ParseError):
        extract_page_vars("<!--\nid 1\n(f)")
