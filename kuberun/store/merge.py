"""Apply merge patches to kubernetes documents.

This implements the subset of the strategic merge patch semantics that the
patches in `kuberun.patch` rely on:

- Maps are merged recursively and a `null` value removes a key.
- A map containing `"$patch": "replace"` replaces the original map.
- Lists whose items are all maps with a `name` key (containers, env vars,
  ports) are merged item by item on `name`, and an item containing
  `"$patch": "delete"` removes the item with that name.
- Any other list replaces the original list.

`json_merge` implements a plain RFC 7386 JSON merge patch.
"""

import copy
from typing import Any

__all__ = [
    "strategic_merge",
    "json_merge",
]

PATCH_DIRECTIVE = "$patch"
DELETE = "delete"
REPLACE = "replace"
MERGE_KEY = "name"


def _is_named_list(value: Any) -> bool:
    return isinstance(value, list) and all(
        isinstance(item, dict) and MERGE_KEY in item for item in value
    )


def _strip_directives(value: Any) -> Any:
    """Return a copy of a new value with any patch directives resolved."""
    if isinstance(value, dict):
        if value.get(PATCH_DIRECTIVE) == DELETE:
            return None
        return {
            k: _strip_directives(v)
            for k, v in value.items()
            if k != PATCH_DIRECTIVE and v is not None
        }
    if isinstance(value, list):
        items = [_strip_directives(item) for item in value]
        return [item for item in items if item is not None]
    return copy.deepcopy(value)


def _merge_named_list(
    original: list[dict[str, Any]], patch: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    result = [copy.deepcopy(item) for item in original]
    for patch_item in patch:
        name = patch_item[MERGE_KEY]
        index = next(
            (i for i, item in enumerate(result) if item.get(MERGE_KEY) == name), None
        )
        if patch_item.get(PATCH_DIRECTIVE) == DELETE:
            if index is not None:
                del result[index]
            continue
        if index is None:
            result.append(_strip_directives(patch_item))
        else:
            result[index] = strategic_merge(result[index], patch_item)
    return result


def strategic_merge(original: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return the result of merging a strategic merge patch into a document."""
    if patch.get(PATCH_DIRECTIVE) == REPLACE:
        return _strip_directives(patch)
    result = copy.deepcopy(original)
    for key, value in patch.items():
        if key == PATCH_DIRECTIVE:
            continue
        if value is None:
            result.pop(key, None)
            continue
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = strategic_merge(current, value)
        elif _is_named_list(current) and _is_named_list(value) and value:
            result[key] = _merge_named_list(current, value)
        else:
            result[key] = _strip_directives(value)
    return result


def json_merge(original: Any, patch: Any) -> Any:
    """Return the result of applying a JSON merge patch to a document."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(original) if isinstance(original, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = json_merge(result.get(key), value)
    return result
