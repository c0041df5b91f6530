"""
Template loader — turns config references into template functions.

Config maps template names to import references:

    templates:
      summarize: "examples.templates:summarize"
      translate: "examples.templates:translate"

References are resolved with importlib. A reference that cannot be
resolved is logged and left out; it never blocks the others.
"""
from __future__ import annotations

import importlib
import structlog
from typing import Any, Mapping

logger = structlog.get_logger()


def resolve_reference(reference: str) -> Any:
    """Import `package.module:attr` (or `package.module.attr`) and return the attribute."""
    if ":" in reference:
        module_path, _, attr_path = reference.partition(":")
    else:
        module_path, _, attr_path = reference.rpartition(".")
    if not module_path or not attr_path:
        raise ValueError(f"Invalid template reference: {reference!r}")

    obj: Any = importlib.import_module(module_path)
    for part in attr_path.split("."):
        obj = getattr(obj, part)
    return obj


def resolve_templates(config: Mapping[str, Any]) -> dict[str, Any]:
    """
    Resolve a name → reference mapping into name → object.

    Values that are already objects (not strings) pass through unchanged, so
    the registry's own callability check decides whether they are usable.
    """
    resolved: dict[str, Any] = {}
    for name, ref in (config or {}).items():
        if not isinstance(ref, str):
            resolved[name] = ref
            continue
        try:
            resolved[name] = resolve_reference(ref)
        except (ImportError, AttributeError, ValueError) as e:
            logger.error("template_reference_unresolved", name=name, reference=ref, error=str(e))
    return resolved
