"""
Tests for sprig evaluation semantics: scoping, closures, control flow,
indexing and truthiness.
"""

import pytest

from sprig import (
    Boolean,
    Environment,
    Function,
    List,
    Number,
    Object,
    RecursionDepthError,
    RuntimeTypeError,
    SourceLocation,
    SprigError,
    String,
    UncaughtControlFlowError,
    Undefined,
    UndefinedVariableError,
    eval_file,
    eval_source,
    evaluate,
    new_base_environment,
    parse,
    tokenize,
)


def numbers(*values):
    return List([Number(x) for x in values])


class TestPrograms:
    def test_empty_program_is_undefined(self, run):
        assert run("") == Undefined()

    def test_value_is_last_expression(self, run):
        assert run("1; 2; 3") == Number(3)

    def test_assignment_produces_value(self, run):
        assert run("x = 5") == Number(5)
        assert run("x") == Number(5)

    def test_chained_assignment(self, run):
        run("a = b = 7")
        assert run("a") == Number(7)
        assert run("b") == Number(7)

    def test_environment_persists_between_sources(self, env):
        eval_source("x = 40", env)
        assert eval_source("x + 2", env) == Number(42)

    def test_evaluate_defaults_to_fresh_environment(self):
        program = parse(tokenize("len([1, 2])"))
        assert evaluate(program) == Number(2)

    def test_top_level_return_ends_program(self, run):
        assert run("1; return 5; 6") == Number(5)

    def test_top_level_return_without_value(self, run):
        assert run("return; 6") == Undefined()

    @pytest.mark.parametrize("source", ["break", "continue", "1; break 2"])
    def test_top_level_break_or_continue(self, run, source):
        with pytest.raises(UncaughtControlFlowError):
            run(source)

    def test_eval_file(self, script, env):
        path = script("x = 1;\ny = x + 1")
        assert eval_file(path, env) == Number(2)

    def test_eval_file_locations(self, script, env):
        path = script("1;\nnope")
        with pytest.raises(UndefinedVariableError) as excinfo:
            eval_file(path, env)
        assert excinfo.value.location == SourceLocation(str(path), 2)


class TestVariables:
    def test_undefined_variable(self, run):
        with pytest.raises(UndefinedVariableError) as excinfo:
            run("\n\nnope")
        assert excinfo.value.name == "nope"
        assert excinfo.value.location.line == 3
        assert str(excinfo.value) == "[line 3] identifier `nope` is not defined"

    def test_first_assignment_in_block_is_local(self, run):
        with pytest.raises(UndefinedVariableError):
            run("{ y = 1 }; y")

    def test_assignment_to_outer_name_mutates_outer(self, run):
        assert run("z = 1; { z = 2 }; z") == Number(2)

    def test_block_value(self, run):
        assert run("{ 1; 2 }") == Number(2)
        assert run("{}") == Undefined()

    def test_nested_blocks(self, run):
        assert run("a = 1; { b = 2; { a = a + b } }; a") == Number(3)

    def test_while_body_runs_in_current_scope(self, run):
        assert run("i = 0; while (i < 3) i = i + 1; i") == Number(3)

    def test_for_variable_is_iteration_local(self, run):
        with pytest.raises(UndefinedVariableError):
            run("for (x in [1]) x; x")

    def test_environment_set_creates_innermost(self):
        root = Environment()
        child = Environment(root)
        child.set("x", Number(1))
        assert "x" in child.store and "x" not in root.store
        root.let("y", Number(1))
        child.set("y", Number(2))
        assert root.get("y") == Number(2)
        assert "y" not in child.store
        assert child.lookup("y") is root
        assert child.lookup("missing") is None


class TestClosures:
    def test_call(self, run):
        assert run("add = function(a, b) a + b; add(1, 2)") == Number(3)

    def test_missing_arguments_are_undefined(self, run):
        assert run("f = function(a, b) b; f(1)") == Undefined()

    def test_extra_arguments_are_ignored(self, run):
        assert run("f = function(a) a; f(1, 2)") == Number(1)

    def test_recursion(self, run):
        source = "fact = function(n) if (n <= 1) 1 else n * fact(n - 1); fact(5)"
        assert run(source) == Number(120)

    def test_counter(self, run):
        source = """
        make = function() { n = 0; function() n = n + 1 };
        c = make(); c(); c(); c()
        """
        assert run(source) == Number(3)

    def test_captured_chain_not_callers(self, run):
        source = """
        make = function() { x = 1; function() x };
        f = make();
        g = function() { x = 2; f() };
        g()
        """
        assert run(source) == Number(1)

    def test_free_name_not_resolved_in_caller(self, run):
        source = "f = function() x; g = function() { x = 2; f() }; g()"
        with pytest.raises(UndefinedVariableError):
            run(source)

    def test_parameters_shadow_outer_names(self, run):
        assert run("x = 1; f = function(x) x * 10; f(2) + x") == Number(21)

    def test_calling_non_function(self, run):
        with pytest.raises(RuntimeTypeError) as excinfo:
            run("1()")
        assert "non-function" in str(excinfo.value)

    def test_function_equality_is_identity(self, run):
        assert run("f = function() 1; f == f") == Boolean(True)
        assert run("(function() 1) == (function() 1)") == Boolean(False)

    def test_function_value(self, run):
        f = run("function(a) a")
        assert isinstance(f, Function)
        assert f.ast.parameters == ("a",)


class TestReturn:
    def test_return_inside_loop_leaves_function(self, run):
        source = """
        f = function() {
            for (x in [1, 2, 3]) if (x == 2) return x * 10;
            99
        };
        f()
        """
        assert run(source) == Number(20)

    def test_return_inside_while(self, run):
        source = "f = function() { i = 0; while (true) { i = i + 1; if (i == 4) return i } }; f()"
        assert run(source) == Number(4)

    def test_return_without_value(self, run):
        assert run("f = function() { return; 1 }; f()") == Undefined()

    def test_return_from_nested_block(self, run):
        assert run("f = function() { { { return 7 } }; 8 }; f()") == Number(7)

    def test_return_inside_argument(self, run):
        source = "f = function() { print(return 3); 4 }; f()"
        assert run(source) == Number(3)


class TestLoops:
    def test_for_doubles(self, run):
        assert run("for (x in [1, 2, 3]) x * 2") == numbers(2, 4, 6)

    def test_while_accumulates(self, run):
        assert run("i = 1; while (i <= 3) { i = i + 1 }") == numbers(2, 3, 4)
        assert run("i") == Number(4)

    def test_undefined_values_are_skipped(self, run):
        assert run("for (x in [1, 2, 3]) if (x == 2) x") == numbers(2)

    def test_for_over_string(self, run):
        result = run('for (c in "abc") c + c')
        assert result == List([String("aa"), String("bb"), String("cc")])

    def test_for_over_empty_list(self, run):
        assert run("for (x in []) x") == List()

    def test_for_over_non_sequence(self, run):
        with pytest.raises(RuntimeTypeError):
            run("for (x in 5) x")

    def test_for_iterates_snapshot(self, run):
        assert run("l = [1, 2]; for (x in l) push(l, x); l") == numbers(1, 2, 1, 2)

    def test_break_stops_loop(self, run):
        assert run("for (x in [1, 2, 3, 4]) if (x == 3) break else x") == numbers(1, 2)

    def test_break_value_is_kept(self, run):
        source = "for (x in [1, 2, 3, 4]) if (x == 3) break x * 100 else x"
        assert run(source) == numbers(1, 2, 300)

    def test_continue_value_is_kept(self, run):
        source = "for (x in range(5)) if (x % 2 == 0) continue x * 10 else x"
        assert run(source) == numbers(1, 20, 3, 40, 5)

    def test_continue_skips_rest_of_body(self, run):
        source = "for (x in range(4)) { if (x % 2 == 0) continue; x }"
        assert run(source) == numbers(1, 3)

    def test_while_break(self, run):
        assert run("i = 0; while (true) { i = i + 1; if (i > 2) break }; i") == Number(3)

    def test_break_only_leaves_inner_loop(self, run):
        source = "for (x in [1, 2]) for (y in [1, 2, 3]) if (y == 2) break else y"
        assert run(source) == List([numbers(1), numbers(1)])

    def test_while_false(self, run):
        assert run("while (false) 1") == List()


class TestControlFlowAcrossCalls:
    """A break or continue escaping a function unwinds into the caller's loop."""

    def test_break_reaches_callers_loop(self, run):
        assert run("f = function() break 7; for (x in [1, 2, 3]) { f(); x }") == numbers(7)

    def test_continue_reaches_callers_loop(self, run):
        source = """
        skip_even = function(x) if (x % 2 == 0) continue;
        for (x in range(5)) { skip_even(x); x }
        """
        assert run(source) == numbers(1, 3, 5)

    def test_break_through_nested_calls(self, run):
        source = """
        inner = function() break;
        outer = function() { inner(); 99 };
        i = 0;
        while (true) { i = i + 1; outer() };
        i
        """
        assert run(source) == Number(1)

    def test_return_is_still_caught_by_the_call(self, run):
        assert run("for (x in [1, 2]) (function() return x)()") == numbers(1, 2)

    def test_break_without_enclosing_loop(self, run):
        with pytest.raises(UncaughtControlFlowError) as excinfo:
            run("f = function() break; f()")
        assert excinfo.value.kind == "break"
        assert "outside of a loop" in str(excinfo.value)

    def test_continue_without_enclosing_loop(self, run):
        with pytest.raises(UncaughtControlFlowError) as excinfo:
            run("g = function() continue; h = function() g(); h()")
        assert excinfo.value.kind == "continue"


class TestRecursionDepth:
    def test_runaway_recursion_is_classified(self, run):
        with pytest.raises(RecursionDepthError) as excinfo:
            run("f = function(n) f(n + 1); f(1)")
        assert isinstance(excinfo.value, SprigError)
        assert "maximum recursion depth exceeded" in str(excinfo.value)
        assert excinfo.value.location.line == 1

    def test_environment_usable_afterwards(self, run):
        with pytest.raises(RecursionDepthError):
            run("f = function() f(); f()")
        assert run("g = function(n) if (n == 0) 0 else 1 + g(n - 1); g(20)") == Number(20)


class TestTruthiness:
    @pytest.mark.parametrize(
        "condition", ["false", "0", "0 / 0", '""', "{:}.missing", "[][1]"]
    )
    def test_falsy(self, run, condition):
        assert run(f"if ({condition}) 1 else 2") == Number(2)

    @pytest.mark.parametrize(
        "condition", ["true", "1", "-1", '"0"', "[]", "{:}", "function() 0", "len"]
    )
    def test_truthy(self, run, condition):
        assert run(f"if ({condition}) 1 else 2") == Number(1)

    def test_if_without_else_is_undefined(self, run):
        assert run("if (false) 1") == Undefined()

    def test_not(self, run):
        assert run("!0") == Boolean(True)
        assert run("![]") == Boolean(False)

    def test_and_or_short_circuit(self, run):
        assert run("0 & nope") == Number(0)
        assert run("1 | nope") == Number(1)

    def test_and_or_yield_deciding_operand(self, run):
        assert run("1 & 2") == Number(2)
        assert run('0 | ""') == String("")
        assert run('"" | "x"') == String("x")


class TestIndexing:
    def test_one_based_read(self, run):
        assert run("a = [10, 20, 30]; a[1]") == Number(10)
        assert run("a[3]") == Number(30)

    def test_out_of_range_reads(self, run):
        run("a = [10, 20, 30]")
        assert run("a[0]") == Undefined()
        assert run("a[4]") == Undefined()
        assert run("a[-1]") == Undefined()
        assert run("a[3 / 2]") == Undefined()

    def test_write_visible_through_aliases(self, run):
        assert run("a = [10, 20, 30]; b = a; a[1] = 99; b") == numbers(99, 20, 30)

    def test_mutation_inside_function(self, run):
        assert run("a = [1]; f = function(l) l[1] = 5; f(a); a") == numbers(5)

    def test_write_past_end_pads(self, run):
        result = run("a = [1]; a[3] = 3; a")
        assert result == List([Number(1), Undefined(), Number(3)])
        assert str(result) == "[1, undefined, 3]"

    @pytest.mark.parametrize("index", ["0", "-1", "3 / 2", '"a"'])
    def test_invalid_list_write(self, run, index):
        with pytest.raises(RuntimeTypeError):
            run(f"a = [1]; a[{index}] = 2")

    def test_string_read(self, run):
        assert run('"abc"[2]') == String("b")
        assert run('"abc"[4]') == Undefined()

    def test_string_is_read_only(self, run):
        with pytest.raises(RuntimeTypeError):
            run('s = "abc"; s[1] = "x"')

    def test_object_access(self, run):
        run("o = {a: 1}")
        assert run("o.a") == Number(1)
        assert run('o["a"]') == Number(1)
        assert run("o.b") == Undefined()

    def test_object_write(self, run):
        run("o = {a: 1}; p = o; o.a = 2; o.b = 3")
        assert run("p") == Object({"a": Number(2), "b": Number(3)})

    def test_assignment_evaluates_value_first(self, run):
        source = """
        log = [];
        f = function(x) { push(log, x); x };
        o = {:};
        o[f("key")] = f("value");
        log
        """
        assert run(source) == List([String("value"), String("key")])

    @pytest.mark.parametrize("source", ['[1]["a"]', "{a: 1}[1]", "5[1]", "true.x"])
    def test_invalid_index_types(self, run, source):
        with pytest.raises(RuntimeTypeError):
            run(source)

    def test_nested_containers(self, run):
        assert run("m = [[1, 2], [3, 4]]; m[2][1] = 9; m[2]") == numbers(9, 4)


class TestThis:
    def test_method_call(self, run):
        assert run("o = {n: 5, get: function() this.n}; o.get()") == Number(5)

    def test_binding_survives_extraction(self, run):
        assert run("o = {n: 5, get: function() this.n}; f = o.get; f()") == Number(5)

    def test_unbound_this_is_undefined(self, run):
        assert run("g = function() this; g()") == Undefined()
        assert run("this") == Undefined()

    def test_list_method(self, run):
        assert run("l = [function() len(this)]; l[1]()") == Number(1)

    def test_method_mutates_receiver(self, run):
        source = "o = {n: 1, inc: function() this.n = this.n + 1}; o.inc(); o.inc(); o.n"
        assert run(source) == Number(3)

    def test_nested_closure_sees_enclosing_this(self, run):
        source = "o = {n: 1, f: function() (function() this.n)()}; o.f()"
        assert run(source) == Number(1)


class TestIsolation:
    def test_overwriting_builtin_stays_in_own_root(self, run):
        import sprig

        run("print = 1")
        assert run("print") == Number(1)
        assert isinstance(sprig.BASE_ENVIRONMENT.get("print"), sprig.Builtin)

    def test_separate_roots(self):
        a = Environment(new_base_environment())
        b = Environment(new_base_environment())
        eval_source("x = 1", a)
        with pytest.raises(UndefinedVariableError):
            eval_source("x", b)
