"""JSON patch operations for node objects."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class JsonPatch:
    """A single JSON patch operation; an empty value is left out on the wire."""

    op: str
    path: str
    value: str = ""


def new_json_patch(op: str, path: str, key: str, value: str) -> JsonPatch:
    """Create a patch for key under path, escaping the key as a JSON pointer."""
    escaped = key.replace("~", "~0").replace("/", "~1")
    return JsonPatch(op=op, path=f"{path}/{escaped}", value=value)


def create_patches(
    remove_keys: Iterable[str] | None,
    old_items: Mapping[str, str] | None,
    new_items: Mapping[str, str] | None,
    json_path: str,
) -> list[JsonPatch]:
    """Return the patches that turn old_items into new_items under json_path.

    Only keys listed in remove_keys are ever removed.
    """
    old_items = old_items or {}
    new_items = new_items or {}
    patches = [
        new_json_patch("remove", json_path, key, "")
        for key in remove_keys or ()
        if key in old_items and key not in new_items
    ]
    for key, new_val in new_items.items():
        if key in old_items:
            if old_items[key] != new_val:
                patches.append(new_json_patch("replace", json_path, key, new_val))
        else:
            patches.append(new_json_patch("add", json_path, key, new_val))
    return patches