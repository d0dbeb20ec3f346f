from __future__ import annotations

import getpass
import os
import platform
import re
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from layered_context.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    from layered_context.config import ContextEntry

    VariableResolverFn = Callable[[], str]
    ResolvedCallback = Callable[[str, str, Path], None]

VARIABLE_PATTERN = re.compile(r"\$\{([^${}]+)\}")
ENV_NAMESPACE = "env."

VARIABLE_RESOLVERS: dict[str, Callable[[], str]] = {}


def register_variable_resolver(
    name: str | list[str],
) -> Callable[[VariableResolverFn], VariableResolverFn]:
    """Decorator to register a built-in `${name}` resolver.

    Built-ins are evaluated once per run, together with the resolvers a caller
    passes to the engine; caller resolvers win on name clashes.

    Args:
        name (str | list[str]): placeholder name(s) the decorated function resolves

    Returns:
        Callable[[VariableResolverFn], VariableResolverFn]: a decorator that registers
        the function in `VARIABLE_RESOLVERS` and returns it
    """

    def decorator(func: VariableResolverFn) -> VariableResolverFn:
        for n in [name] if isinstance(name, str) else name:
            VARIABLE_RESOLVERS[n] = func
        return func

    return decorator


def _now() -> datetime:
    return datetime.now(UTC).astimezone()


@register_variable_resolver("date")
def resolve_date() -> str:
    return _now().date().isoformat()


@register_variable_resolver("time")
def resolve_time() -> str:
    return _now().strftime("%H:%M:%S")


@register_variable_resolver("timestamp")
def resolve_timestamp() -> str:
    return _now().isoformat(timespec="seconds")


@register_variable_resolver("user")
def resolve_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


@register_variable_resolver("home")
def resolve_home() -> str:
    return str(Path.home())


@register_variable_resolver("cwd")
def resolve_cwd() -> str:
    return str(Path.cwd())


@register_variable_resolver("platform")
def resolve_platform() -> str:
    return sys.platform


@register_variable_resolver("python_version")
def resolve_python_version() -> str:
    return platform.python_version()


def build_variable_table(
    resolvers: Mapping[str, VariableResolverFn],
    errors: list[str] | None = None,
) -> dict[str, str]:
    """Evaluate every resolver once.

    A failing resolver leaves its placeholder unresolved; the failure is logged
    and, when `errors` is given, recorded there.

    Args:
        resolvers (Mapping[str, VariableResolverFn]): placeholder name -> resolver
        errors (list[str] | None): run error list receiving failures

    Returns:
        dict[str, str]: placeholder name -> value
    """
    table: dict[str, str] = {}
    for name, resolver in resolvers.items():
        try:
            table[name] = str(resolver())
        except Exception as e:  # noqa: BLE001
            logger.warning("variable_resolver_failed", name=name, error=str(e))
            if errors is not None:
                errors.append(f"Variable resolver '{name}' failed: {e}")
    return table


class VariableInterpolator:
    """Best-effort `${name}` substitution over context entries.

    `${env.NAME}` reads the environment mapping; every other name reads the
    run's variable table. Unknown names are left verbatim.
    """

    def __init__(
        self,
        table: Mapping[str, str],
        environ: Mapping[str, str] | None = None,
        on_resolved: ResolvedCallback | None = None,
    ) -> None:
        self.table = dict(table)
        self.environ = os.environ if environ is None else environ
        self.on_resolved = on_resolved

    def lookup(self, name: str) -> str | None:
        if name.startswith(ENV_NAMESPACE):
            return self.environ.get(name[len(ENV_NAMESPACE) :])
        return self.table.get(name)

    def interpolate_text(self, text: str) -> tuple[str, list[tuple[str, str]]]:
        """Substitute placeholders in `text`.

        Returns:
            tuple[str, list[tuple[str, str]]]: the new text and one `(name, value)`
                pair per substitution, in order of appearance
        """
        substitutions: list[tuple[str, str]] = []

        def replace(match: re.Match[str]) -> str:
            name = match.group(1).strip()
            value = self.lookup(name)
            if value is None:
                return match.group(0)
            substitutions.append((name, value))
            return value

        return VARIABLE_PATTERN.sub(replace, text), substitutions

    def interpolate_entry(self, entry: ContextEntry) -> ContextEntry:
        """Return a copy of `entry` with interpolated content; priority is untouched."""
        if "${" not in entry.content:
            return entry
        new_content, substitutions = self.interpolate_text(entry.content)
        if not substitutions:
            return entry
        resolved = dict(entry.resolved_variables)
        for name, value in substitutions:
            resolved[name] = value
            if self.on_resolved is not None:
                self.on_resolved(name, value, entry.source_path)
        return entry.model_copy(update={"content": new_content, "resolved_variables": resolved})

    def interpolate_entries(self, entries: Sequence[ContextEntry]) -> list[ContextEntry]:
        return [self.interpolate_entry(e) for e in entries]


def find_undefined_variables(
    content: str,
    table: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> list[str]:
    """List the placeholder names in `content` that would stay verbatim.

    Args:
        content (str): text to inspect
        table (Mapping[str, str]): the variable table of a run
        environ (Mapping[str, str] | None): environment mapping, defaults to `os.environ`

    Returns:
        list[str]: unresolvable names, sorted and without duplicates
    """
    interpolator = VariableInterpolator(table, environ)
    names = {m.group(1).strip() for m in VARIABLE_PATTERN.finditer(content)}
    return sorted(n for n in names if interpolator.lookup(n) is None)
