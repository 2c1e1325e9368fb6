"""KPIFlow — Sandbox child process.

Executed as ``python -I sandbox_runner.py`` with an empty environment. Reads
``{"code", "args", "memory_mb", "cpu_seconds"}`` as JSON on stdin, runs
``transform(*args)`` under resource limits with a restricted builtins table,
and writes ``{"ok": true, "result": ...}`` or ``{"ok": false, "error_type",
"error"}`` as JSON on stdout.

Generated code never sees a real module object. ``import json`` binds a
namespace holding only the names listed in ``MODULE_EXPORTS``, so helpers a
module imported for itself (``json.codecs``, ``collections._sys``) stay out
of reach.

Standard library only: nothing from the kpiflow package is importable here.
"""

import ast
import builtins
import importlib
import json
import sys
import traceback
import types
from datetime import date, datetime

ENTRY_POINT = "transform"

# None exports every public name of a C module that holds only functions and constants
MODULE_EXPORTS = {
    "math": None,
    "itertools": None,
    "statistics": (
        "mean", "fmean", "geometric_mean", "harmonic_mean", "median", "median_low",
        "median_high", "median_grouped", "mode", "multimode", "quantiles", "pstdev",
        "pvariance", "stdev", "variance", "StatisticsError",
    ),
    "datetime": ("date", "datetime", "time", "timedelta", "timezone", "tzinfo", "MINYEAR", "MAXYEAR"),
    "collections": ("Counter", "OrderedDict", "defaultdict", "deque", "namedtuple", "ChainMap"),
    "functools": ("reduce", "partial", "cmp_to_key", "lru_cache", "cache", "total_ordering"),
    "re": (
        "compile", "search", "match", "fullmatch", "findall", "finditer", "split", "sub",
        "subn", "escape", "error", "Pattern", "Match", "IGNORECASE", "I", "MULTILINE", "M",
        "DOTALL", "S", "VERBOSE", "X", "ASCII", "A",
    ),
    "json": ("loads", "dumps", "JSONDecodeError"),
    "decimal": (
        "Decimal", "InvalidOperation", "DivisionByZero", "ROUND_HALF_UP", "ROUND_HALF_EVEN",
        "ROUND_HALF_DOWN", "ROUND_UP", "ROUND_DOWN", "ROUND_FLOOR", "ROUND_CEILING",
    ),
    "calendar": (
        "monthrange", "isleap", "leapdays", "weekday", "timegm", "month_name", "month_abbr",
        "day_name", "day_abbr", "MONDAY", "TUESDAY", "WEDNESDAY", "THURSDAY", "FRIDAY",
        "SATURDAY", "SUNDAY",
    ),
}

ALLOWED_MODULES = frozenset(MODULE_EXPORTS)

FORBIDDEN_NAMES = frozenset(
    {
        "eval",
        "exec",
        "compile",
        "open",
        "input",
        "globals",
        "locals",
        "vars",
        "getattr",
        "setattr",
        "delattr",
        "breakpoint",
        "memoryview",
        "exit",
        "quit",
    }
)

# Public attributes that lead from generators, coroutines and tracebacks back to frames
FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await",
        "ag_frame", "ag_code", "ag_await",
        "tb_frame", "tb_next",
        "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
        "mro",
    }
)

SAFE_BUILTINS = (
    "abs", "all", "any", "bool", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hasattr", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "ord",
    "pow", "range", "repr", "reversed", "round", "set", "slice", "sorted",
    "str", "sum", "tuple", "zip", "object", "staticmethod", "classmethod",
    "property", "super",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "OverflowError", "StopIteration",
    "TypeError", "ValueError", "ZeroDivisionError",
    "True", "False", "None",
)


def module_exports(name: str) -> frozenset:
    """Names generated code may read from an allowed module."""
    listed = MODULE_EXPORTS[name]
    if listed is not None:
        return frozenset(listed)
    module = importlib.import_module(name)
    return frozenset(
        attr
        for attr in dir(module)
        if not attr.startswith("_") and not isinstance(getattr(module, attr), types.ModuleType)
    )


def check_source(code: str) -> None:
    """Static safety check on generated source.

    Raises:
        ValueError: With a message naming the first violation found.
    """
    try:
        tree = ast.parse(code)
    except SyntaxError as e:
        raise ValueError(f"Syntax error on line {e.lineno}: {e.msg}") from e

    bound_modules = {}
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.name not in ALLOWED_MODULES:
                    raise ValueError(f"Import of '{alias.name}' is not allowed")
                bound_modules[alias.asname or alias.name] = alias.name
        elif isinstance(node, ast.ImportFrom):
            if node.level or node.module not in ALLOWED_MODULES:
                raise ValueError(f"Import from '{node.module}' is not allowed")
            exports = module_exports(node.module)
            for alias in node.names:
                if alias.name not in exports:
                    raise ValueError(f"Import of '{alias.name}' from '{node.module}' is not allowed")

    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in FORBIDDEN_ATTRIBUTES:
                raise ValueError(f"Access to attribute '{node.attr}' is not allowed")
            if isinstance(node.value, ast.Name) and node.value.id in bound_modules:
                module = bound_modules[node.value.id]
                if node.attr not in module_exports(module):
                    raise ValueError(f"Access to '{module}.{node.attr}' is not allowed")
            # str.format can walk attributes ("{0.__class__}"); only literal templates pass
            if node.attr in ("format", "format_map") and not (
                isinstance(node.value, ast.Constant)
                and isinstance(node.value.value, str)
                and "._" not in node.value.value
                and "__" not in node.value.value
            ):
                raise ValueError("str.format is only allowed on literal templates")
        elif isinstance(node, ast.Name):
            if node.id.startswith("__") or node.id in FORBIDDEN_NAMES:
                raise ValueError(f"Use of name '{node.id}' is not allowed")
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            raise ValueError("global/nonlocal statements are not allowed")

    if not any(
        isinstance(node, ast.FunctionDef) and node.name == ENTRY_POINT
        for node in tree.body
    ):
        raise ValueError(f"Code must define a top-level function '{ENTRY_POINT}'")


_facades: dict = {}


def _facade(name: str) -> types.SimpleNamespace:
    # No __name__ on the namespace: "from x import y" must not fall back to sys.modules
    if name not in _facades:
        module = importlib.import_module(name)
        _facades[name] = types.SimpleNamespace(
            **{attr: getattr(module, attr) for attr in module_exports(name) if hasattr(module, attr)}
        )
    return _facades[name]


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level or name not in ALLOWED_MODULES:
        raise ImportError(f"Import of '{name}' is not allowed")
    return _facade(name)


def _build_builtins() -> dict:
    table = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    table["__import__"] = _restricted_import
    table["__build_class__"] = builtins.__build_class__
    table["print"] = lambda *args, **kwargs: None  # stdout carries the result
    return table


def _apply_limits(memory_mb: int, cpu_seconds: int) -> None:
    import resource

    memory = memory_mb * 1024 * 1024
    resource.setrlimit(resource.RLIMIT_AS, (memory, memory))
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
    resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def run(request: dict) -> dict:
    code = request["code"]
    try:
        check_source(code)
    except ValueError as e:
        return {"ok": False, "error_type": "SandboxViolation", "error": str(e)}

    _apply_limits(int(request.get("memory_mb", 256)), int(request.get("cpu_seconds", 5)))

    namespace = {"__builtins__": _build_builtins(), "__name__": "generated_transformer"}
    try:
        exec(compile(code, "<transformer>", "exec"), namespace)
        result = namespace[ENTRY_POINT](*request.get("args", []))
    except MemoryError:
        return {"ok": False, "error_type": "MemoryError", "error": "memory limit exceeded"}
    except Exception as e:
        frames = traceback.extract_tb(e.__traceback__)
        line = next(
            (f.lineno for f in reversed(frames) if f.filename == "<transformer>"), None
        )
        where = f" (line {line})" if line else ""
        return {"ok": False, "error_type": type(e).__name__, "error": f"{e}{where}"}
    return {"ok": True, "result": result}


def main() -> None:
    request = json.loads(sys.stdin.read())
    response = run(request)
    try:
        out = json.dumps(response, default=_json_default, allow_nan=False)
    except ValueError as e:
        out = json.dumps({"ok": False, "error_type": "ValueError", "error": f"Result is not JSON-serializable: {e}"})
    sys.stdout.write(out)
    sys.stdout.flush()


if __name__ == "__main__":
    main()
