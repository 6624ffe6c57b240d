from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"
_catalog_cache: dict[str, Any] | None = None


def _load_catalog() -> dict[str, Any]:
    global _catalog_cache
    if _catalog_cache is not None:
        return _catalog_cache
    payload = json.loads(PROMPTS_PATH.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Prompt catalog must be a JSON object.")
    _catalog_cache = payload
    return payload


def render_prompt(key: str, **values: Any) -> str:
    """Render a dotted catalog key (e.g. ``researcher.system_prompt``)."""
    node: Any = _load_catalog()
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(f"Prompt key not found: {key}")
        node = node[part]
    if not isinstance(node, str):
        raise TypeError(f"Prompt key must map to a string: {key}")
    try:
        return Template(node).substitute(**values)
    except KeyError as exc:
        raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc
