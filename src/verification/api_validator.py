"""Static detection of fabricated APIs.

Generated code tends to invent plausible members (``Promise.wait``,
``arr.unique()``), utility types, hooks and npm packages. The validator
matches the artifact against curated tables of real and known-fabricated
names. Every finding names the offending symbol.
"""

from __future__ import annotations

import re
import time

from src.core.models import CheckResult
from src.tools.sandbox import normalize_language

# Real static members of the built-ins checked by the allow-list pass.
VALID_APIS: dict[str, frozenset[str]] = {
    "JSON": frozenset({"parse", "stringify", "rawJSON", "isRawJSON"}),
    "Object": frozenset({
        "keys", "values", "entries", "assign", "freeze", "seal", "create",
        "defineProperty", "defineProperties", "getOwnPropertyDescriptor",
        "getOwnPropertyDescriptors", "getOwnPropertyNames", "getOwnPropertySymbols",
        "getPrototypeOf", "setPrototypeOf", "is", "isExtensible", "isFrozen", "isSealed",
        "preventExtensions", "hasOwn", "fromEntries", "groupBy", "prototype",
    }),
    "Array": frozenset({"isArray", "from", "fromAsync", "of", "prototype"}),
    "String": frozenset({"fromCharCode", "fromCodePoint", "raw", "prototype"}),
    "Promise": frozenset({
        "all", "allSettled", "any", "race", "reject", "resolve", "withResolvers", "try", "prototype",
    }),
    "Math": frozenset({
        "abs", "acos", "acosh", "asin", "asinh", "atan", "atan2", "atanh", "cbrt",
        "ceil", "clz32", "cos", "cosh", "exp", "expm1", "floor", "fround", "f16round",
        "hypot", "imul", "log", "log10", "log1p", "log2", "max", "min", "pow", "random",
        "round", "sign", "sin", "sinh", "sqrt", "sumPrecise", "tan", "tanh", "trunc",
        "E", "LN10", "LN2", "LOG10E", "LOG2E", "PI", "SQRT1_2", "SQRT2",
    }),
    "Number": frozenset({
        "isFinite", "isInteger", "isNaN", "isSafeInteger", "parseFloat", "parseInt",
        "MAX_VALUE", "MIN_VALUE", "NaN", "NEGATIVE_INFINITY", "POSITIVE_INFINITY",
        "MAX_SAFE_INTEGER", "MIN_SAFE_INTEGER", "EPSILON", "prototype",
    }),
}

# Members that generated code commonly invents.
HALLUCINATED_APIS: dict[str, tuple[str, ...]] = {
    "JSON": ("parseString", "parseObject", "toObject", "fromObject"),
    "Array": ("unique", "distinct", "flatten", "compact", "first", "last", "isEmpty", "remove"),
    "Array.prototype": ("unique", "distinct", "flatten", "compact", "first", "last", "isEmpty", "remove", "contains"),
    "String": ("format", "isEmpty", "isBlank"),
    "String.prototype": (
        "isEmpty", "isBlank", "format", "reverse", "capitalize", "camelCase", "snakeCase",
        "isEmail", "isPhone", "toPhone",
    ),
    "Promise": ("wait", "sleep", "delay", "timeout", "parallel", "serial", "first"),
    "Object": ("isEmpty", "clone", "deepClone", "merge", "deepMerge"),
    "fetch": ("get", "post", "put", "delete", "patch"),
    "Math": ("clamp", "lerp", "map", "constrain", "radians", "degrees"),
    "console": ("success", "fail", "print", "write", "output"),
    "localStorage": ("save", "load", "put", "get", "add", "delete", "has", "contains"),
    "sessionStorage": ("save", "load", "put", "get", "add", "delete", "has", "contains"),
    "document": ("query", "find", "findElement", "get", "add", "remove"),
    "window": ("navigate", "redirect", "goto", "openUrl"),
    "Date": ("getFullDate", "getFormattedDate", "toFormat", "format", "diff", "add", "subtract"),
    "Date.prototype": (
        "getFullDate", "getFormattedDate", "toFormat", "format", "diff", "add", "subtract",
        "isValid", "isBefore", "isAfter",
    ),
}

# Instance methods that exist on no String, Date or Array.
HALLUCINATED_INSTANCE_METHODS: dict[str, str] = {
    "isEmpty": "String",
    "isBlank": "String",
    "isEmail": "String",
    "isPhone": "String",
    "toPhone": "String",
    "getFullDate": "Date",
    "toFormat": "Date",
    "unique": "Array",
    "distinct": "Array",
}

HALLUCINATED_PYTHON_APIS: tuple[str, ...] = (
    "json.parse",
    "json.stringify",
    "json.decode",
    "json.encode",
    "os.exists",
    "os.path.exist",
    "asyncio.sleep_ms",
    "asyncio.run_all",
    "requests.fetch",
    "math.clamp",
    "math.lerp",
)

FAKE_TS_TYPES: tuple[str, ...] = (
    "Optional", "Strict", "Mutable", "Nullable", "NonNull", "DeepPartial", "DeepRequired",
)

FAKE_PACKAGES = frozenset({
    "super-validator-pro", "advanced-utils", "easy-validation", "smart-parser",
    "auto-formatter", "magic-utils", "simple-auth", "quick-db", "fast-cache",
    "super-fetch", "easy-http", "quick-api", "email-validator-advanced",
    "phone-checker-pro", "validation-helper", "form-validator-pro",
})

KNOWN_PACKAGES = frozenset({
    "react", "react-dom", "next", "express", "axios", "lodash", "moment",
    "dayjs", "date-fns", "uuid", "zod", "yup", "joi", "fs", "path", "os",
    "crypto", "http", "https", "url", "querystring", "stream", "buffer",
    "events", "util", "child_process", "@prisma/client", "prisma",
    "typescript", "ts-node", "esbuild", "webpack", "vite", "rollup",
    "tailwindcss", "postcss", "autoprefixer", "fast-glob", "fast-deep-equal",
})

_SUSPICIOUS_PACKAGE = (
    re.compile(r"^(super|fast|quick|easy|simple|auto|magic|smart|advanced|ultimate)-", re.IGNORECASE),
    re.compile(r"-(pro|plus|advanced|ultimate)$", re.IGNORECASE),
)

VALID_REACT_HOOKS = frozenset({
    "useState", "useEffect", "useContext", "useReducer", "useCallback", "useMemo",
    "useRef", "useImperativeHandle", "useLayoutEffect", "useDebugValue",
    "useDeferredValue", "useTransition", "useId", "useSyncExternalStore",
    "useInsertionEffect", "useOptimistic", "useFormStatus", "useFormState",
    "useActionState", "use",
})

_STATIC_MEMBER = re.compile(r"(?<![\w.$])(JSON|Object|Array|Promise|Math|Number|String)\.([A-Za-z_$][\w$]*)")
_INSTANCE_CALL = re.compile(r"\.\s*(" + "|".join(HALLUCINATED_INSTANCE_METHODS) + r")\s*\(")
_REACT_HOOK = re.compile(r"\bReact\.(use[A-Z]?\w*)\b")
_JS_IMPORT = re.compile(
    r"""(?:import\s+(?:[^'";]*?\s+from\s+)?|require\s*\(\s*|import\s*\(\s*)['"]([^'"]+)['"]"""
)

_FRAMEWORK_RULES = (
    (re.compile(r"export\s+(async\s+)?function\s+getServerData\b"),
     "Hallucinated Next.js API: getServerData should be getServerSideProps"),
    (re.compile(r"export\s+(async\s+)?function\s+getPageProps\b"),
     "Hallucinated Next.js API: getPageProps should be getServerSideProps or getStaticProps"),
    (re.compile(r"\bprisma\.\w+\.get\s*\("),
     "Hallucinated Prisma API: prisma.<model>.get() should be findUnique() or findFirst()"),
    (re.compile(r"\bprisma\.\w+\.find\s*\("),
     "Hallucinated Prisma API: prisma.<model>.find() should be findUnique() or findMany()"),
    (re.compile(r"\bprisma\.\w+\.save\s*\("),
     "Hallucinated Prisma API: prisma.<model>.save() should be create() or update()"),
    (re.compile(r"\bprisma\.\w+\.remove\s*\("),
     "Hallucinated Prisma API: prisma.<model>.remove() should be delete()"),
)

_CLASS_COMPONENT = re.compile(r"class\s+\w+\s+extends\s+(React\.)?(Pure)?Component\b")
_LIFECYCLE_RULES = (
    ("onMount", "componentDidMount"),
    ("onUnmount", "componentWillUnmount"),
    ("onUpdate", "componentDidUpdate"),
)


class APIValidator:
    """Matches an artifact against the curated API tables."""

    def validate(self, code: str, language: str = "javascript") -> list[str]:
        """Return one message per fabricated symbol found; empty means clean."""
        lang = normalize_language(language)
        if lang == "python":
            return self._check_python(code)

        errors: list[str] = []
        errors.extend(self._check_hallucinated_members(code))
        errors.extend(self._check_unknown_static_members(code))
        errors.extend(self._check_instance_methods(code))
        errors.extend(self._check_framework_apis(code))
        errors.extend(self._check_typescript_types(code))
        errors.extend(self._check_packages(code))
        errors.extend(self._check_react_hooks(code))
        return _dedupe(errors)

    def check(self, code: str, language: str = "javascript") -> CheckResult:
        started = time.monotonic()
        errors = self.validate(code, language)
        duration_ms = round((time.monotonic() - started) * 1000, 2)
        if errors:
            return CheckResult(passed=False, message="; ".join(errors), duration_ms=duration_ms)
        return CheckResult(passed=True, duration_ms=duration_ms)

    def _check_hallucinated_members(self, code: str) -> list[str]:
        errors = []
        for owner, members in HALLUCINATED_APIS.items():
            owner_pattern = re.escape(owner)
            for member in members:
                if re.search(rf"(?<![\w.$]){owner_pattern}\.{member}\b", code):
                    errors.append(f"Hallucinated API: {owner}.{member} does not exist")
        return errors

    def _check_unknown_static_members(self, code: str) -> list[str]:
        errors = []
        for match in _STATIC_MEMBER.finditer(code):
            owner, member = match.group(1), match.group(2)
            if member in VALID_APIS[owner] or member in HALLUCINATED_APIS.get(owner, ()):
                continue
            errors.append(f"Unknown API: {owner}.{member} is not a built-in member of {owner}")
        return errors

    def _check_instance_methods(self, code: str) -> list[str]:
        errors = []
        for match in _INSTANCE_CALL.finditer(code):
            method = match.group(1)
            owner = HALLUCINATED_INSTANCE_METHODS[method]
            errors.append(f"Hallucinated {owner} method: .{method}() does not exist on {owner}")
        return errors

    def _check_framework_apis(self, code: str) -> list[str]:
        errors = [message for pattern, message in _FRAMEWORK_RULES if pattern.search(code)]
        if _CLASS_COMPONENT.search(code):
            for fake, real in _LIFECYCLE_RULES:
                if re.search(rf"\b{fake}\s*\(", code):
                    errors.append(f"Hallucinated React lifecycle: {fake} should be {real}")
        return errors

    def _check_typescript_types(self, code: str) -> list[str]:
        errors = []
        for fake_type in FAKE_TS_TYPES:
            if not re.search(rf"(?<![\w.$]){fake_type}\s*<", code):
                continue
            # A locally declared alias of the same name is legitimate.
            if re.search(rf"\b(type|interface)\s+{fake_type}\b", code):
                continue
            errors.append(f"Hallucinated TypeScript type: {fake_type}<T> does not exist")
        return errors

    def _check_packages(self, code: str) -> list[str]:
        errors = []
        for match in _JS_IMPORT.finditer(code):
            package = match.group(1)
            if package.startswith((".", "/")) or package.startswith("node:"):
                continue
            name = _package_name(package)
            if name in FAKE_PACKAGES:
                errors.append(f"Hallucinated package: '{name}' does not exist")
            elif _is_suspicious_package(name):
                errors.append(f"Suspicious package: '{name}' may not exist")
        return errors

    def _check_react_hooks(self, code: str) -> list[str]:
        return [
            f"Hallucinated React hook: React.{hook} does not exist"
            for hook in _REACT_HOOK.findall(code)
            if hook not in VALID_REACT_HOOKS
        ]

    def _check_python(self, code: str) -> list[str]:
        errors = []
        for api in HALLUCINATED_PYTHON_APIS:
            if re.search(rf"(?<![\w.]){re.escape(api)}\b", code):
                errors.append(f"Hallucinated API: {api} does not exist")
        return errors


def _package_name(specifier: str) -> str:
    """Strip a subpath: 'lodash/fp' -> 'lodash', '@scope/pkg/x' -> '@scope/pkg'."""
    parts = specifier.split("/")
    if specifier.startswith("@") and len(parts) >= 2:
        return "/".join(parts[:2])
    return parts[0]


def _is_suspicious_package(name: str) -> bool:
    if name in KNOWN_PACKAGES or name.startswith("@types/"):
        return False
    return any(pattern.search(name) for pattern in _SUSPICIOUS_PACKAGE)


def _dedupe(errors: list[str]) -> list[str]:
    seen: set[str] = set()
    unique = []
    for error in errors:
        if error not in seen:
            seen.add(error)
            unique.append(error)
    return unique
