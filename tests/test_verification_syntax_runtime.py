"""Tests for the syntax and sandbox layers of the verification gate."""

import pytest

from src.tools.sandbox import PARSER_UNAVAILABLE_EXIT, ExecutionResult
from src.verification.runtime import (
    PASS_MARKER,
    RuntimeChecker,
    build_js_harness,
    is_module_error,
)
from src.verification.syntax import (
    SyntaxChecker,
    is_executable,
    strip_code_fences,
    strip_module_syntax,
)
from tests.conftest import requires_node


class TestStripping:
    def test_fences_removed(self):
        assert strip_code_fences("```js\nconst a = 1;\n```") == "const a = 1;"

    def test_module_syntax_removed(self):
        code = (
            "import React from 'react';\n"
            "import { useState } from 'react';\n"
            "export default function App() { return 1; }\n"
            "export const x = 2;\n"
        )
        stripped = strip_module_syntax(code)
        assert "import" not in stripped
        assert "export" not in stripped
        assert "function App()" in stripped
        assert "const x = 2;" in stripped


class TestIsExecutable:
    @pytest.mark.parametrize("code", [
        "function add(a, b) { return a + b; }",
        "const total = 1 + 2;",
        "items.forEach((i) => { console.log(i); });",
    ])
    def test_js_executable(self, code):
        assert is_executable(code, "javascript")

    def test_declarations_only_are_not_executed(self):
        assert not is_executable("interface User { id: number; name: string }", "typescript")

    def test_python_executable(self):
        assert is_executable("def f():\n    return 1\n", "python")
        assert not is_executable("# just a comment\n", "python")


class TestSyntaxChecker:
    def test_python_parsed_in_process(self, fake_sandbox):
        checker = SyntaxChecker(fake_sandbox)
        assert checker.check("x = 1\n", "python").passed
        result = checker.check("x = (\n", "python")
        assert not result.passed
        assert result.message.startswith("Syntax error:")
        assert fake_sandbox.syntax_calls == []

    def test_js_parsed_in_sandbox_without_module_syntax(self, fake_sandbox):
        checker = SyntaxChecker(fake_sandbox)
        result = checker.check("import fs from 'fs';\nconst a = 1;", "js")
        assert result.passed
        code, language = fake_sandbox.syntax_calls[0]
        assert "import" not in code
        assert language == "javascript"

    def test_missing_parser_is_a_failure(self, fake_sandbox):
        fake_sandbox.syntax_result = ExecutionResult(
            stdout="", stderr="TypeScript parser unavailable in this node runtime\n",
            exit_code=PARSER_UNAVAILABLE_EXIT,
        )
        result = SyntaxChecker(fake_sandbox).check("let a: number = 1;", "typescript")
        assert not result.passed
        assert result.message.startswith("Syntax check unavailable:")

    def test_unsupported_language(self, fake_sandbox):
        result = SyntaxChecker(fake_sandbox).check("puts 1", "ruby")
        assert not result.passed
        assert result.message == "Syntax error: unsupported language 'ruby'"

    @requires_node
    def test_real_node_parser(self, python_sandbox):
        checker = SyntaxChecker(python_sandbox)
        assert checker.check("const a = [1, 2].map((x) => x * 2);", "javascript").passed
        assert not checker.check("const a = ;", "javascript").passed


class TestRuntimeChecker:
    def test_harness_wraps_candidate_in_function_scope(self):
        harness = build_js_harness("export const req = 1;")
        assert "(function (require) {\nconst req = 1;\n}).call(globalThis, __require);" in harness
        assert harness.rstrip().endswith(f"console.log('{PASS_MARKER}');")

    def test_non_executable_is_skipped(self, fake_sandbox):
        result = RuntimeChecker(fake_sandbox).check("type Id = string;", "typescript")
        assert result.passed
        assert result.skipped
        assert fake_sandbox.run_calls == []

    def test_missing_marker_fails(self, fake_sandbox):
        fake_sandbox.run_result = ExecutionResult(stdout="", stderr="", exit_code=0)
        result = RuntimeChecker(fake_sandbox).check("const a = 1;", "javascript")
        assert not result.passed
        assert result.message == "Sandbox failed: execution ended before completion marker"

    def test_timeout_fails(self, fake_sandbox):
        fake_sandbox.run_result = ExecutionResult(
            stdout="", stderr="", exit_code=-1, timed_out=True, error="Execution exceeded 5.0s timeout",
        )
        result = RuntimeChecker(fake_sandbox).check("while (x) { x--; }\nconst a = 1;", "javascript")
        assert result.message == "Sandbox failed: Execution exceeded 5.0s timeout"

    def test_unavailable_sandbox_fails_closed(self, fake_sandbox):
        fake_sandbox.run_result = ExecutionResult(
            stdout="", stderr="", exit_code=-1, error="Command not found: node",
        )
        result = RuntimeChecker(fake_sandbox).check("const a = 1;", "javascript")
        assert not result.passed
        assert result.message == "Sandbox unavailable: Command not found: node"

    def test_module_error_accepted_on_syntax(self, fake_sandbox):
        fake_sandbox.run_result = ExecutionResult(
            stdout="", stderr="Error: Cannot find module 'left-pad'\n", exit_code=1,
        )
        result = RuntimeChecker(fake_sandbox).check("const pad = require('left-pad');", "javascript")
        assert result.passed
        assert result.message == "Module syntax verified (sandbox skipped)"

    def test_is_module_error(self):
        assert is_module_error("ModuleNotFoundError: No module named 'numpy'")
        assert not is_module_error("TypeError: x is not a function")

    def test_flagged_candidate_never_reaches_sandbox(self, fake_sandbox):
        code = "const wipe = () => fs.rmSync('/srv/data', { recursive: true });\nwipe();"
        result = RuntimeChecker(fake_sandbox).check(code, "javascript")
        assert not result.passed
        assert result.message == "Sandbox refused to execute: Destructive filesystem call (fs.rmSync)"
        assert fake_sandbox.run_calls == []

    def test_python_timeout_enforced(self, python_sandbox):
        python_sandbox.config.timeout_seconds = 1.0
        result = RuntimeChecker(python_sandbox).check("count = 0\nwhile count >= 0:\n    count += 1\n", "python")
        assert not result.passed
        assert result.message.startswith("Sandbox failed:")


@requires_node
class TestHarnessUnderNode:
    """Realistic candidates through the real harness and a node child process."""

    @pytest.fixture
    def runtime(self, python_sandbox):
        return RuntimeChecker(python_sandbox)

    def test_var_redeclaring_a_stub(self, runtime):
        code = (
            "var data = [1, 2, 3];\n"
            "function total(xs) { return xs.reduce((a, b) => a + b, 0); }\n"
            "console.log(total(data));\n"
        )
        result = runtime.check(code, "javascript")
        assert result.passed, result.message

    def test_let_and_function_shadow_stubs(self, runtime):
        code = (
            "let config = { retries: 3 };\n"
            "function start() { return config.retries; }\n"
            "var e = start();\n"
            "console.log(e);\n"
        )
        result = runtime.check(code, "javascript")
        assert result.passed, result.message

    def test_request_handler_uses_req_and_res(self, runtime):
        code = (
            "function handler(req, res) {\n"
            "  return res.status(200).json({ ok: true, path: req.url });\n"
            "}\n"
            "handler(req, res);\n"
        )
        assert runtime.check(code, "javascript").passed

    def test_local_storage_round_trip(self, runtime):
        code = (
            "const saveCart = (cart) => { localStorage.setItem('cart', JSON.stringify(cart)); };\n"
            "saveCart(items);\n"
            "console.log(JSON.parse(localStorage.getItem('cart')).length);\n"
        )
        assert runtime.check(code, "javascript").passed

    def test_async_fetch(self, runtime):
        code = (
            "async function load(endpoint) {\n"
            "  const response = await fetch(endpoint);\n"
            "  return response.json();\n"
            "}\n"
            "load(url).then((body) => console.log(body));\n"
        )
        assert runtime.check(code, "javascript").passed

    def test_thrown_error_fails(self, runtime):
        code = (
            "function parse(input) {\n"
            "  if (!input) { throw new TypeError('empty input'); }\n"
            "  return input;\n"
            "}\n"
            "parse('');\n"
        )
        result = runtime.check(code, "javascript")
        assert not result.passed
        assert "TypeError: empty input" in result.message

    def test_network_module_treated_as_missing(self, runtime):
        code = "const http = require('node:http');\nconst server = http.createServer(() => {});\n"
        result = runtime.check(code, "javascript")
        assert result.passed
        assert result.message == "Module syntax verified (sandbox skipped)"

    def test_filesystem_outside_workdir_denied(self, python_sandbox, runtime, tmp_path):
        if python_sandbox.node_permission_flag() is None:
            pytest.skip("node runtime has no permission model")
        target = tmp_path / "escape.txt"
        code = f"const fs = require('fs');\nfs.writeFileSync({str(target)!r}, 'escaped');\n"
        result = runtime.check(code, "javascript")
        assert not result.passed
        assert not target.exists()
