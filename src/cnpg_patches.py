"""
Patch engine for read-modify-write updates of live custom resources.

A merge strategy describes one change; ``apply_strategy`` applies it to a
deep copy of a freshly fetched document and leaves every other field,
known to this server or not, exactly as fetched. The operator owns most
of a Cluster document, so nothing here rebuilds or normalizes it.

Strategies:
- SetField: overwrite the value at a path, creating intermediate maps
- ToggleAnnotation: set or remove one metadata annotation
- AppendToArray: append one element to the list at a path. NOT idempotent:
  appending the same element twice yields two entries.
- MergeMap: shallow-merge keys into the map at a path
- Create: a complete document for a create call
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple, Union

from cnpg_errors import StructuralMismatch

Path = Tuple[str, ...]


@dataclass(frozen=True)
class Create:
    template: Mapping[str, Any]


@dataclass(frozen=True)
class SetField:
    path: Path
    value: Any


@dataclass(frozen=True)
class ToggleAnnotation:
    key: str
    presence: bool
    value: str = "on"


@dataclass(frozen=True)
class AppendToArray:
    path: Path
    element: Any


@dataclass(frozen=True)
class MergeMap:
    path: Path
    partial: Mapping[str, Any] = field(default_factory=dict)


MergeStrategy = Union[Create, SetField, ToggleAnnotation, AppendToArray, MergeMap]


def dotted(path: Path) -> str:
    return ".".join(path)


def _require_root(document: Dict[str, Any], path: Path) -> None:
    """The top-level ancestor must exist in the fetched document."""
    if not path:
        raise StructuralMismatch("Patch path cannot be empty")
    root = path[0]
    if root not in document:
        raise StructuralMismatch(f"Fetched document has no '{root}' section; refusing to patch {dotted(path)}")
    if not isinstance(document[root], dict):
        raise StructuralMismatch(
            f"Expected a map at '{root}' but found {type(document[root]).__name__}"
        )


def _walk(document: Dict[str, Any], path: Path) -> Dict[str, Any]:
    """
    Return the map that holds the last key of ``path``.

    Intermediate maps are created when absent; traversal through a
    non-map value raises StructuralMismatch.
    """
    _require_root(document, path)
    node = document
    for depth, key in enumerate(path[:-1]):
        child = node.get(key)
        if child is None:
            child = {}
            node[key] = child
        elif not isinstance(child, dict):
            raise StructuralMismatch(
                f"Cannot traverse '{dotted(path[:depth + 1])}': expected a map, found {type(child).__name__}"
            )
        node = child
    return node


def _set_field(document: Dict[str, Any], strategy: SetField) -> None:
    parent = _walk(document, strategy.path)
    parent[strategy.path[-1]] = copy.deepcopy(strategy.value)


def _toggle_annotation(document: Dict[str, Any], strategy: ToggleAnnotation) -> None:
    path = ("metadata", "annotations", strategy.key)
    if strategy.presence:
        _walk(document, path)[strategy.key] = strategy.value
        return

    # The annotations map stays in place, empty if this was its last key.
    _require_root(document, path)
    annotations = document["metadata"].setdefault("annotations", {})
    if not isinstance(annotations, dict):
        raise StructuralMismatch(
            f"Cannot traverse 'metadata.annotations': expected a map, found {type(annotations).__name__}"
        )
    annotations.pop(strategy.key, None)


def _append_to_array(document: Dict[str, Any], strategy: AppendToArray) -> None:
    parent = _walk(document, strategy.path)
    key = strategy.path[-1]
    current = parent.get(key)
    if current is None:
        current = []
    elif not isinstance(current, list):
        raise StructuralMismatch(
            f"Cannot append to '{dotted(strategy.path)}': expected a list, found {type(current).__name__}"
        )
    parent[key] = current + [copy.deepcopy(strategy.element)]


def _merge_map(document: Dict[str, Any], strategy: MergeMap) -> None:
    parent = _walk(document, strategy.path)
    key = strategy.path[-1]
    current = parent.get(key)
    if current is None:
        current = {}
        parent[key] = current
    elif not isinstance(current, dict):
        raise StructuralMismatch(
            f"Cannot merge into '{dotted(strategy.path)}': expected a map, found {type(current).__name__}"
        )
    current.update(copy.deepcopy(dict(strategy.partial)))


def apply_strategy(document: Mapping[str, Any], strategy: MergeStrategy) -> Dict[str, Any]:
    """
    Apply one strategy and return a new document.

    The input document is never modified.

    Raises:
        StructuralMismatch: If the path does not fit the document's shape
    """
    if isinstance(strategy, Create):
        return copy.deepcopy(dict(strategy.template))

    result = copy.deepcopy(dict(document))
    if isinstance(strategy, SetField):
        _set_field(result, strategy)
    elif isinstance(strategy, ToggleAnnotation):
        _toggle_annotation(result, strategy)
    elif isinstance(strategy, AppendToArray):
        _append_to_array(result, strategy)
    elif isinstance(strategy, MergeMap):
        _merge_map(result, strategy)
    else:
        raise TypeError(f"Unsupported merge strategy: {type(strategy).__name__}")
    return result


def prepare_for_replace(document: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Drop operator-owned ``status`` before submitting a replace.

    ``metadata.resourceVersion`` stays in the body so the API server can
    reject the write if the resource changed since it was fetched.
    """
    body = {key: value for key, value in document.items() if key != "status"}
    return copy.deepcopy(body)


def changed_paths(before: Any, after: Any, prefix: Path = ()) -> List[Path]:
    """List the paths whose values differ between two documents."""
    if isinstance(before, dict) and isinstance(after, dict):
        paths: List[Path] = []
        for key in list(before) + [k for k in after if k not in before]:
            if key not in after or key not in before:
                paths.append(prefix + (key,))
            else:
                paths.extend(changed_paths(before[key], after[key], prefix + (key,)))
        return paths
    if before != after:
        return [prefix]
    return []


def lookup(document: Mapping[str, Any], path: Path, default: Any = None) -> Any:
    node: Any = document
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return default
        node = node[key]
    return node
