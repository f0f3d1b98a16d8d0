"""
User extension points.

Two hooks can be supplied at startup:

- the scraper hook, called at fixed lifecycle phases (see `Phase`) with the
  phase name in `context.label`
- the output hook, called for every normalized record after the built-in
  map and filter steps; it may return a record, a list of records or None

Hooks are referenced as `"package.module:function"` or
`"path/to/hooks.py:function"` and take a single ExtensionContext argument.
They can be plain functions or coroutines.
"""

import importlib
import importlib.util
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from crawl_engine import maybe_await
from errors import HookCompileError, HookError

logger = logging.getLogger(__name__)


class Phase:
    """Labels passed to the scraper hook."""

    SETUP = "SETUP"
    FILTER_SITEMAP_URL = "FILTER_SITEMAP_URL"
    PRENAVIGATION = "PRENAVIGATION"
    POSTNAVIGATION = "POSTNAVIGATION"
    RUN = "RUN"
    FINISHED = "FINISHED"

    ALL = (SETUP, FILTER_SITEMAP_URL, PRENAVIGATION, POSTNAVIGATION, RUN, FINISHED)


class ExtensionContext(dict):
    """Hook argument: helpers, custom data and phase fields, readable as attributes."""

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name) from None


HookFunction = Callable[[ExtensionContext], Any]
MapFunction = Callable[[Any, ExtensionContext], Any]
FilterFunction = Callable[[Dict[str, Any], ExtensionContext], Union[bool, Awaitable[bool]]]
OutputFunction = Callable[[Any, ExtensionContext], Any]


def passthrough(context: ExtensionContext) -> Any:
    """Default hook: emit the mapped item unchanged."""
    return context.item


def _load_module(reference: str, key: str):
    if reference.endswith('.py') or os.sep in reference or '/' in reference:
        if not os.path.isfile(reference):
            raise HookCompileError(f'"{key}" file not found: {reference}')
        spec = importlib.util.spec_from_file_location(f"{key}_module", reference)
        if spec is None or spec.loader is None:
            raise HookCompileError(f'"{key}" cannot be loaded from {reference}')
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return importlib.import_module(reference)


def compile_hook(source: Union[str, HookFunction, None], key: str) -> HookFunction:
    """
    Turn a hook reference into a callable, once, at startup.

    Args:
        source: None/blank for the passthrough hook, a callable, or a
            `"module:function"` / `"path/to/file.py:function"` reference
        key: Input option name, used in error messages

    Raises:
        HookCompileError: the reference cannot be resolved or the target
            is not a function of one argument
    """
    if source is None or (isinstance(source, str) and not source.strip()):
        return passthrough

    if callable(source):
        fn = source
    elif isinstance(source, str):
        module_ref, sep, attr = source.strip().rpartition(':')
        if not sep or not module_ref or not attr:
            raise HookCompileError(f'"{key}" parameter must be a function reference like "module:function"')

        try:
            module = _load_module(module_ref, key)
        except HookCompileError:
            raise
        except Exception as e:
            raise HookCompileError(f'"{key}" parameter could not be loaded from {module_ref}: {e}') from e

        fn = getattr(module, attr, None)
        if fn is None:
            raise HookCompileError(f'"{key}" parameter: {module_ref} has no attribute {attr}')
    else:
        raise HookCompileError(f'"{key}" parameter must be a function')

    if not callable(fn):
        raise HookCompileError(f'"{key}" parameter must be a function')

    try:
        inspect.signature(fn).bind(None)
    except TypeError:
        raise HookCompileError(f'"{key}" function must accept exactly one context argument')
    except ValueError:
        # no signature available (some builtins), trust the caller
        pass

    logger.debug(f"Compiled {key} hook {getattr(fn, '__name__', fn)!r}")
    return fn


def extend_function(key: str,
                    source: Union[str, HookFunction, None] = None,
                    map: Optional[MapFunction] = None,
                    filter: Optional[FilterFunction] = None,
                    output: Optional[OutputFunction] = None,
                    custom_data: Optional[Dict[str, Any]] = None,
                    helpers: Optional[Dict[str, Any]] = None) -> Callable[..., Awaitable[None]]:
    """
    Compile a hook and wrap it in a map -> filter -> hook -> output chain.

    `map` turns the raw data into zero or more items (a list result is split
    into separate items). Each item accepted by `filter` is passed to the hook
    together with the raw data; every non-None value it returns (lists are
    split again) goes to `output`.

    Without `map` the hook is called once per invocation with `item` None,
    which is how the scraper hook is driven.

    Returns:
        `async def extended(data, **phase_fields)`
    """
    hook = compile_hook(source, key)
    base = {**(helpers or {}), "custom_data": custom_data or {}}

    async def split_map(value: Any, context: ExtensionContext) -> List[Any]:
        mapped = await maybe_await(map(value, context)) if map else value
        if isinstance(mapped, list):
            return mapped
        return [mapped]

    async def extended(data: Any, **args: Any) -> None:
        merged = {**base, **args}

        for item in await split_map(data, ExtensionContext(merged)):
            if filter and not await maybe_await(filter({"data": data, "item": item}, ExtensionContext(merged))):
                continue

            context = ExtensionContext({**merged, "data": data, "item": item})
            try:
                result = await maybe_await(hook(context))
            except Exception as e:
                raise HookError(f'"{key}" failed: {type(e).__name__}: {e}') from e

            for out in (result if isinstance(result, list) else [result]):
                if output and out is not None:
                    await maybe_await(output(out, context))

    extended.hook = hook
    return extended
