"""In-memory index over a user's category forest.

The forest is an immutable tuple of root ``CategoryNode``s. Lookups never
raise for unknown ids or paths; mutations take an explicit root-to-node id
path and return a new forest that shares every subtree off that spine.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Iterator, Optional, Sequence

from models import TransactionType

PATH_SEPARATOR = ">"
PATH_JOINER = " > "


@dataclass(frozen=True)
class CategoryNode:
    id: str
    name: str
    type: Optional[TransactionType] = None
    sub_categories: tuple["CategoryNode", ...] = field(default_factory=tuple)


Forest = tuple[CategoryNode, ...]


@dataclass(frozen=True)
class Subtree:
    ids: tuple[str, ...]
    names: tuple[str, ...]


@dataclass(frozen=True)
class FlatCategory:
    node: CategoryNode
    parent_id: Optional[str]
    position: int
    depth: int


def _walk(
    nodes: Sequence[CategoryNode], trail: tuple[CategoryNode, ...] = ()
) -> Iterator[tuple[CategoryNode, tuple[CategoryNode, ...]]]:
    for node in nodes:
        lineage = trail + (node,)
        yield node, lineage
        yield from _walk(node.sub_categories, lineage)


def find_by_id(category_id: Optional[str], forest: Forest) -> Optional[CategoryNode]:
    if not category_id:
        return None
    for node, _lineage in _walk(forest):
        if node.id == category_id:
            return node
    return None


def _lineage(category_id: Optional[str], forest: Forest) -> Optional[tuple[CategoryNode, ...]]:
    if not category_id:
        return None
    for node, lineage in _walk(forest):
        if node.id == category_id:
            return lineage
    return None


def split_path(path: str) -> list[str]:
    return [segment.strip() for segment in path.split(PATH_SEPARATOR)]


def find_by_path(path: Optional[str], forest: Forest) -> Optional[CategoryNode]:
    if not path or not path.strip():
        return None
    segments = [segment.lower() for segment in split_path(path)]
    if any(not segment for segment in segments):
        return None

    level: Sequence[CategoryNode] = forest
    found: Optional[CategoryNode] = None
    for segment in segments:
        found = next((n for n in level if n.name.strip().lower() == segment), None)
        if found is None:
            return None
        level = found.sub_categories
    return found


def collect_subtree(node: Optional[CategoryNode]) -> Subtree:
    if node is None:
        return Subtree(ids=(), names=())
    ids: list[str] = []
    names: list[str] = []
    for current, _lineage in _walk((node,)):
        ids.append(current.id)
        names.append(current.name)
    return Subtree(ids=tuple(ids), names=tuple(names))


def path_label(category_id: Optional[str], forest: Forest) -> Optional[str]:
    lineage = _lineage(category_id, forest)
    if lineage is None:
        return None
    return PATH_JOINER.join(node.name for node in lineage)


def id_path(category_id: Optional[str], forest: Forest) -> Optional[tuple[str, ...]]:
    lineage = _lineage(category_id, forest)
    if lineage is None:
        return None
    return tuple(node.id for node in lineage)


def root_of(category_id: Optional[str], forest: Forest) -> Optional[CategoryNode]:
    lineage = _lineage(category_id, forest)
    return lineage[0] if lineage else None


def effective_type(category_id: Optional[str], forest: Forest) -> Optional[TransactionType]:
    root = root_of(category_id, forest)
    return root.type if root else None


def find_first_by_name(name: Optional[str], forest: Forest) -> Optional[CategoryNode]:
    if not name:
        return None
    wanted = name.strip().lower()
    for node, _lineage in _walk(forest):
        if node.name.strip().lower() == wanted:
            return node
    return None


def flatten(forest: Forest) -> list[FlatCategory]:
    rows: list[FlatCategory] = []

    def visit(nodes: Sequence[CategoryNode], parent_id: Optional[str], depth: int) -> None:
        for position, node in enumerate(nodes):
            rows.append(FlatCategory(node, parent_id, position, depth))
            visit(node.sub_categories, node.id, depth + 1)

    visit(forest, None, 0)
    return rows


def build_forest(rows: Iterable[object]) -> Forest:
    """Rebuild a forest from adjacency rows.

    Rows need ``id``, ``parent_id``, ``position``, ``name`` and ``type``
    attributes. Rows whose parent is missing are dropped with their subtree.
    """
    children: dict[Optional[str], list[object]] = {}
    for row in rows:
        children.setdefault(getattr(row, "parent_id"), []).append(row)
    for siblings in children.values():
        siblings.sort(key=lambda r: (getattr(r, "position"), getattr(r, "name")))

    def build(parent_id: Optional[str], seen: frozenset[str]) -> tuple[CategoryNode, ...]:
        nodes = []
        for row in children.get(parent_id, []):
            row_id = getattr(row, "id")
            if row_id in seen:
                continue
            nodes.append(
                CategoryNode(
                    id=row_id,
                    name=getattr(row, "name"),
                    type=getattr(row, "type") if parent_id is None else None,
                    sub_categories=build(row_id, seen | {row_id}),
                )
            )
        return tuple(nodes)

    return build(None, frozenset())


def _rebuild(
    nodes: tuple[CategoryNode, ...],
    path: Sequence[str],
    change,
) -> tuple[CategoryNode, ...]:
    head, rest = path[0], path[1:]
    index = next((i for i, n in enumerate(nodes) if n.id == head), None)
    if index is None:
        raise ValueError("Category not found")
    target = nodes[index]
    if rest:
        replacement: tuple[CategoryNode, ...] = (
            replace(target, sub_categories=_rebuild(target.sub_categories, rest, change)),
        )
    else:
        replacement = change(target)
    return nodes[:index] + replacement + nodes[index + 1 :]


def add_root(forest: Forest, node: CategoryNode) -> Forest:
    if node.type is None:
        raise ValueError("Root categories need a type")
    if find_by_id(node.id, forest):
        raise ValueError("Category id already in use")
    return forest + (node,)


def add_child(forest: Forest, parent_path: Sequence[str], node: CategoryNode) -> Forest:
    if not parent_path:
        raise ValueError("Parent path is empty")
    if find_by_id(node.id, forest):
        raise ValueError("Category id already in use")
    child = replace(node, type=None)
    return _rebuild(
        forest,
        parent_path,
        lambda parent: (replace(parent, sub_categories=parent.sub_categories + (child,)),),
    )


def rename_node(forest: Forest, path: Sequence[str], name: str) -> Forest:
    if not path:
        raise ValueError("Category path is empty")
    return _rebuild(forest, path, lambda node: (replace(node, name=name),))


def remove_node(forest: Forest, path: Sequence[str]) -> Forest:
    if not path:
        raise ValueError("Category path is empty")
    return _rebuild(forest, path, lambda _node: ())
