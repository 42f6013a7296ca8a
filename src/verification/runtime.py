"""Sandbox layer of the verification gate.

Executable-looking candidates are run inside the sandbox primitive with
stub ambient globals, so plausible code does not fail merely for touching
``req``, ``localStorage`` or ``fetch``. The candidate runs inside its own
function scope below the stubs, so ``var``, ``let`` and function
declarations shadow a stub instead of clashing with it. Inside that scope
``require`` refuses network and process modules the same way a missing
package fails.

Nothing is executed that the static safety scan already flags.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from src.core.models import CheckResult
from src.tools.sandbox import Sandbox, normalize_language
from src.verification.safety import CodeSafetyAnalyzer
from src.verification.syntax import is_executable, strip_code_fences, strip_module_syntax

logger = logging.getLogger("foundry.verification.runtime")

PASS_MARKER = "__VERIFICATION_PASS__"

# Errors that only mean the sandbox cannot resolve module imports.
MODULE_ERRORS = (
    "Cannot use import statement",
    "import is not defined",
    "require is not defined in ES module",
    "SyntaxError: Cannot use import",
    "Unexpected token 'export'",
    "Cannot find module",
    "ERR_MODULE_NOT_FOUND",
    "ModuleNotFoundError",
    "ImportError",
)

_JS_STUBS = """\
const __noop = () => {};
const __store = () => { const m = new Map(); return {
  getItem: (k) => (m.has(k) ? m.get(k) : null), setItem: (k, v) => { m.set(k, String(v)); },
  removeItem: (k) => { m.delete(k); }, clear: () => m.clear(), key: (i) => Array.from(m.keys())[i] ?? null,
  get length() { return m.size; } }; };
const __element = () => ({ style: {}, dataset: {}, classList: { add: __noop, remove: __noop, toggle: __noop, contains: () => false },
  appendChild: __noop, removeChild: __noop, addEventListener: __noop, removeEventListener: __noop,
  setAttribute: __noop, getAttribute: () => null, querySelector: () => null, querySelectorAll: () => [],
  textContent: '', value: '', children: [] });
globalThis.fetch = async () => ({ ok: true, status: 200, json: async () => ({}), text: async () => '' });
globalThis.localStorage = globalThis.localStorage || __store();
globalThis.sessionStorage = globalThis.sessionStorage || __store();
globalThis.document = globalThis.document || { getElementById: () => __element(), querySelector: () => __element(),
  querySelectorAll: () => [], createElement: () => __element(), addEventListener: __noop, body: __element() };
globalThis.window = globalThis.window || globalThis;
const useState = (v) => [typeof v === 'function' ? v() : v, __noop];
const useEffect = __noop;
const useLayoutEffect = __noop;
const useMemo = (fn) => fn();
const useCallback = (fn) => fn;
const useRef = (v) => ({ current: v });
const useContext = () => ({});
const useReducer = (r, s) => [s, __noop];
const React = { useState, useEffect, useLayoutEffect, useMemo, useCallback, useRef, useContext, useReducer,
  createElement: () => ({}), Fragment: 'Fragment' };
const person = { name: 'Test', age: 30, email: 'test@example.com' };
const user = { id: 1, name: 'Test', email: 'test@example.com', role: 'user' };
const data = [1, 2, 3];
const items = [{ id: 1, name: 'a' }, { id: 2, name: 'b' }];
const arr = [3, 1, 2];
const obj = { a: 1, b: 2 };
const config = {};
const options = {};
const props = {};
const state = {};
const event = { preventDefault: __noop, stopPropagation: __noop, target: { value: '' } };
const e = event;
const req = { body: {}, params: {}, query: {}, headers: {}, method: 'GET', url: '/' };
const res = { status() { return res; }, json() { return res; }, send() { return res; }, end() { return res; },
  set() { return res; }, setHeader() { return res; } };
const db = { query: async () => [], find: async () => [], findOne: async () => null, insert: async () => ({}) };
const url = 'https://example.com';
const graph = {};
const start = 0;
const list = [];
const __DENIED_MODULES = new Set(['child_process', 'cluster', 'dgram', 'dns', 'http', 'http2', 'https',
  'inspector', 'net', 'tls', 'worker_threads']);
const __require = (name) => {
  const bare = String(name).replace(/^node:/, '');
  if (__DENIED_MODULES.has(bare)) {
    throw new Error(`Cannot find module '${bare}' (network and process modules are disabled in the sandbox)`);
  }
  return require(name);
};
"""


def build_js_harness(code: str) -> str:
    """Wrap a JS/TS candidate with stub ambients and the completion marker."""
    body = strip_module_syntax(code)
    return (
        f"{_JS_STUBS}\n(function (require) {{\n{body}\n}}).call(globalThis, __require);\n"
        f"console.log('{PASS_MARKER}');\n"
    )


def build_python_harness(code: str) -> str:
    return f"{code}\n\nprint({PASS_MARKER!r})\n"


def is_module_error(stderr: str) -> bool:
    return any(marker in stderr for marker in MODULE_ERRORS)


class RuntimeChecker:
    """Executes a candidate under the sandbox's hard timeout.

    Candidates the safety scan flags are refused without running, so
    destructive code never reaches the sandbox.
    """

    def __init__(self, sandbox: Sandbox, safety: Optional[CodeSafetyAnalyzer] = None):
        self.sandbox = sandbox
        self.safety = safety or CodeSafetyAnalyzer()

    def check(self, code: str, language: str) -> CheckResult:
        started = time.monotonic()
        lang = normalize_language(language)
        source = strip_code_fences(code)

        if not is_executable(source, lang):
            return CheckResult.skip("Not an executable snippet; verified by syntax alone")

        report = self.safety.analyze(source, lang)
        if not report.is_safe:
            logger.info("Refusing to execute candidate: %s", "; ".join(report.issues))
            return CheckResult(
                passed=False,
                message=f"Sandbox refused to execute: {report.issues[0]}",
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )

        if lang == "python":
            harness = build_python_harness(source)
        else:
            harness = build_js_harness(source)

        outcome = self.sandbox.execute(harness, lang)
        result = self._judge(outcome)
        result.duration_ms = round((time.monotonic() - started) * 1000, 2)
        return result

    def _judge(self, outcome) -> CheckResult:
        if outcome.timed_out:
            return CheckResult(passed=False, message=f"Sandbox failed: {outcome.error or 'timed out'}")
        if outcome.error:
            return CheckResult(passed=False, message=f"Sandbox unavailable: {outcome.error}")
        if outcome.exit_code == 0:
            if PASS_MARKER in outcome.stdout:
                return CheckResult(passed=True)
            return CheckResult(passed=False, message="Sandbox failed: execution ended before completion marker")
        if is_module_error(outcome.stderr):
            logger.debug("Module import error in sandbox; accepting on syntax alone")
            return CheckResult(passed=True, message="Module syntax verified (sandbox skipped)")
        return CheckResult(passed=False, message=f"Sandbox failed: {_tail(outcome.stderr, outcome.exit_code)}")


def _tail(stderr: str, exit_code: int) -> str:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    if not lines:
        return f"exit code {exit_code}"
    # Node prints the thrown error on the line after the caret.
    for line in reversed(lines):
        if "Error" in line:
            return line[:300]
    return lines[-1][:300]
