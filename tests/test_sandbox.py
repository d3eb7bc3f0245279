from thermostatd.scripting.sandbox import find_forbidden_globals, strip_strings_and_comments


def test_strips_short_and_long_strings():
    src = 'local a = "os" .. \'io\' .. [[debug]] .. [==[load]==]'
    code = strip_strings_and_comments(src)
    assert "os" not in code and "debug" not in code and "load" not in code
    assert code.startswith("local a = ")


def test_strips_line_and_block_comments():
    src = "x = 1 -- os.exit()\n--[[ io.open ]] y = 2"
    code = strip_strings_and_comments(src)
    assert "os" not in code and "io" not in code
    assert "y = 2" in code


def test_escaped_quote_does_not_end_string():
    assert find_forbidden_globals('local s = "say \\"os\\" loudly"') == []


def test_field_and_method_access_allowed():
    assert find_forbidden_globals("t.io = 1; t:load(); x = state.debug") == []


def test_concatenation_is_not_field_access():
    assert find_forbidden_globals('local s = "a" .. os.time()') == ["os"]


def test_reports_each_name_once_in_order():
    src = "require('x'); os.exit(); require('y'); local c = coroutine"
    assert find_forbidden_globals(src) == ["require", "os", "coroutine"]
