"""
Tree Codec

Bidirectional mapping between a stream of ``(dotted.path, string value)``
records and a nested CMI value tree.

Reconstruction goes through an explicit tagged tree (``ObjectNode`` /
``ArrayNode`` / ``ScalarNode``) so the array-vs-object question is answered in
exactly one place, ``_new_container``: a container created for a segment
followed by a non-negative integer literal is an array, anything else is an
object. Consequences worth knowing:

* object keys that look like indices (``"0"``, ``"12"``) come back as arrays;
* empty objects and arrays produce no records and therefore vanish;
* gaps in an array come back as ``None``;
* values are strings after a round trip (``True`` -> ``"true"``, ``None`` ->
  ``"null"``, ``85.0`` -> ``"85"``).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from app.exceptions import ValidationError

logger = logging.getLogger(__name__)

PATH_SEPARATOR = "."
# Largest array index accepted on reconstruction; guards against a single
# record such as ``cmi.interactions.99999999.id`` allocating a huge list.
MAX_ARRAY_INDEX = 10_000

_INDEX_RE = re.compile(r"^(0|[1-9][0-9]*)$")


def is_index(segment: str) -> bool:
    """True when ``segment`` is a non-negative integer literal."""
    return bool(_INDEX_RE.match(segment))


def parse_path(path: str) -> List[str]:
    """Split a dotted path, rejecting empty segments and oversized indices."""
    if not isinstance(path, str) or not path:
        raise ValidationError("Path must be a non-empty string")
    segments = path.split(PATH_SEPARATOR)
    for segment in segments:
        if not segment:
            raise ValidationError(f"Malformed path '{path}': empty segment")
        if is_index(segment) and int(segment) > MAX_ARRAY_INDEX:
            raise ValidationError(
                f"Malformed path '{path}': index {segment} exceeds "
                f"{MAX_ARRAY_INDEX}"
            )
    return segments


def scalar_to_str(value: Any) -> str:
    """Canonical string form used for every stored record value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


# Tagged tree ----------------------------------------------------------------


@dataclass
class ScalarNode:
    value: str

    def to_python(self) -> str:
        return self.value


@dataclass
class ObjectNode:
    children: Dict[str, "Node"] = field(default_factory=dict)

    def get(self, key: str) -> Optional["Node"]:
        return self.children.get(key)

    def put(self, key: str, node: "Node") -> None:
        self.children[key] = node

    def to_python(self) -> Dict[str, Any]:
        return {k: v.to_python() for k, v in self.children.items()}


@dataclass
class ArrayNode:
    items: Dict[int, "Node"] = field(default_factory=dict)

    def get(self, key: str) -> Optional["Node"]:
        return self.items.get(int(key))

    def put(self, key: str, node: "Node") -> None:
        self.items[int(key)] = node

    def to_object(self) -> ObjectNode:
        return ObjectNode(
            {str(i): node for i, node in sorted(self.items.items())}
        )

    def to_python(self) -> List[Any]:
        if not self.items:
            return []
        out: List[Any] = [None] * (max(self.items) + 1)
        for index, node in self.items.items():
            out[index] = node.to_python()
        return out


Node = Union[ScalarNode, ObjectNode, ArrayNode]
Container = Union[ObjectNode, ArrayNode]


def _new_container(next_segment: str) -> Container:
    return ArrayNode() if is_index(next_segment) else ObjectNode()


def _accepts(container: Container, key: str) -> bool:
    return isinstance(container, ObjectNode) or is_index(key)


class TreeBuilder:
    """Folds path/value records into a tagged tree; later records win."""

    def __init__(self) -> None:
        self.root = ObjectNode()

    def apply(self, path: str, value: Any) -> None:
        segments = parse_path(path)
        parent: Optional[Container] = None
        parent_key = ""
        current: Container = self.root
        for position, segment in enumerate(segments[:-1]):
            current = self._ensure_accepts(current, parent, parent_key, segment)
            child = current.get(segment)
            if not isinstance(child, (ObjectNode, ArrayNode)):
                # missing, or a scalar that now needs children
                child = _new_container(segments[position + 1])
                current.put(segment, child)
            parent, parent_key, current = current, segment, child
        last = segments[-1]
        current = self._ensure_accepts(current, parent, parent_key, last)
        current.put(last, ScalarNode(scalar_to_str(value)))

    def _ensure_accepts(
        self,
        container: Container,
        parent: Optional[Container],
        parent_key: str,
        key: str,
    ) -> Container:
        if _accepts(container, key):
            return container
        # array receiving a named key: promote it to an object
        promoted = container.to_object()
        if parent is not None:
            parent.put(parent_key, promoted)
        return promoted

    def to_python(self) -> Dict[str, Any]:
        return self.root.to_python()


# Public API -----------------------------------------------------------------


def flatten(tree: Any, prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten a nested structure into ``(path, string value)`` pairs.

    Dicts recurse by key, lists and tuples by index, everything else is a
    scalar leaf. ``prefix`` is prepended to every path.
    """
    pairs: List[Tuple[str, str]] = []
    _flatten_into(tree, prefix, pairs)
    return pairs


def _flatten_into(node: Any, path: str, out: List[Tuple[str, str]]) -> None:
    if isinstance(node, dict):
        for key, value in node.items():
            key = str(key)
            if not key or PATH_SEPARATOR in key:
                raise ValidationError(
                    f"Invalid key {key!r} under '{path or '<root>'}'"
                )
            _flatten_into(value, _join(path, key), out)
    elif isinstance(node, (list, tuple)):
        for index, value in enumerate(node):
            _flatten_into(value, _join(path, str(index)), out)
    else:
        if not path:
            raise ValidationError("A scalar value needs a path prefix")
        out.append((path, scalar_to_str(node)))


def _join(prefix: str, segment: str) -> str:
    return f"{prefix}{PATH_SEPARATOR}{segment}" if prefix else segment


def unflatten(
    pairs: Iterable[Tuple[str, Any]], skip_invalid: bool = False
) -> Dict[str, Any]:
    """Rebuild the nested tree from pairs given in ascending write order."""
    builder = TreeBuilder()
    for path, value in pairs:
        try:
            builder.apply(path, value)
        except ValidationError as exc:
            if not skip_invalid:
                raise
            logger.warning("Skipping record with malformed path: %s", exc)
    return builder.to_python()
