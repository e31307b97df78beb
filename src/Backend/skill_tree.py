import copy
import itertools
import secrets
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from tree_validation import (
	ValidationError,
	clamp_weight,
	icon_data_errors,
	is_int,
	validate_tree_data,
)

"""
SkillForest Tree Engine
-----------------------
In-memory model of one skill tree: a rooted tree of SkillNodes with
prerequisite-gated unlocking and weighted subtree progress.

  • SkillNode uses __slots__ (trees are rebuilt on every load)
  • children index dict → O(1) child lookup, no scan over all nodes
  • lock state is a flat one-hop pass over direct prerequisites
  • subtree completion is one post-order pass reusing child aggregates → O(n)
  • every mutation re-derives locks + completion before returning
  • load_tree() validates the whole payload before touching state and never
    trusts persisted derived fields
"""


TREE_VERSION = "1.0"
DEFAULT_TREE_NAME = "My Skill Tree"

ROOT_WEIGHT = 5
CHILD_WEIGHT = 1

ROOT_ICON_COLOR = "#8b5cf6"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class NotFoundError(KeyError):
	"""An operation referenced a node id that is not in the tree."""

	def __init__(self, node_id: str) -> None:
		super().__init__(node_id)
		self.node_id = node_id

	def __str__(self) -> str:
		return f"node {self.node_id!r} not found"


class InvalidOperationError(ValueError):
	"""Structurally forbidden mutation.  ``reason`` tags the cause for callers."""

	reason = "invalid-operation"

	def __init__(self, message: str, reason: str | None = None) -> None:
		super().__init__(message)
		if reason is not None:
			self.reason = reason


class SelfParentError(InvalidOperationError):
	reason = "self-parent"


class CycleError(InvalidOperationError):
	reason = "cycle"


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class IconData:
	"""Presentational icon triple; carried through untouched except for colour cascade."""
	type: str = "emoji"
	icon: str = ""
	color: str | None = None
	background_color: str | None = None

	def to_dict(self) -> dict[str, Any]:
		d: dict[str, Any] = {"type": self.type, "icon": self.icon, "color": self.color}
		if self.background_color is not None:
			d["backgroundColor"] = self.background_color
		return d

	@classmethod
	def from_dict(cls, d: Mapping[str, Any]) -> "IconData":
		return cls(
			type=d.get("type", "emoji"),
			icon=d.get("icon", ""),
			color=d.get("color"),
			background_color=d.get("backgroundColor"),
		)

	@classmethod
	def coerce(cls, value: Any) -> "IconData | None":
		"""IconData, wire dict or None → a fresh IconData (or None)."""
		if value is None:
			return None
		if isinstance(value, IconData):
			return replace(value)
		errors = icon_data_errors(value)
		if errors:
			raise ValidationError(errors)
		return cls.from_dict(value)


@dataclass(slots=True)
class SubtreeProgress:
	"""Weight sums behind subtree completion."""
	completed: int = 0
	total: int = 0

	@property
	def ratio(self) -> float:
		return self.completed / self.total if self.total > 0 else 0.0

	def to_dict(self) -> dict[str, int]:
		return {"completed": self.completed, "total": self.total}


# ---------------------------------------------------------------------------
# Skill node  (__slots__ for speed & memory)
# ---------------------------------------------------------------------------
class SkillNode:
	"""A single skill in the tree."""

	__slots__ = (
		"node_id", "label", "description", "completed", "locked",
		"parent_id", "prerequisites", "icon_data", "weight",
		"subtree_completion", "subtree_progress", "is_header", "metadata",
	)

	def __init__(
		self,
		node_id: str,
		label: str = "",
		parent_id: str | None = None,
		*,
		description: str = "",
		completed: bool = False,
		locked: bool = False,
		prerequisites: list[str] | None = None,
		icon_data: IconData | None = None,
		weight: int = CHILD_WEIGHT,
		is_header: bool = False,
		metadata: dict[str, Any] | None = None,
	) -> None:
		self.node_id = node_id
		self.label = label
		self.parent_id = parent_id
		self.description = description
		self.completed = completed
		self.locked = locked
		self.prerequisites: list[str] = list(prerequisites) if prerequisites is not None else []
		self.icon_data = icon_data
		self.weight = weight
		self.is_header = is_header
		self.metadata: dict[str, Any] = metadata if metadata is not None else {}
		self.subtree_completion: float = 0.0
		self.subtree_progress = SubtreeProgress()

	def to_dict(self) -> dict[str, Any]:
		"""Wire form (camelCase).  Lists and dicts are copies."""
		return {
			"id":                self.node_id,
			"label":             self.label,
			"description":       self.description,
			"completed":         self.completed,
			"locked":            self.locked,
			"parentId":          self.parent_id,
			"prerequisites":     list(self.prerequisites),
			"iconData":          self.icon_data.to_dict() if self.icon_data is not None else None,
			"weight":            self.weight,
			"subtreeCompletion": self.subtree_completion,
			"subtreeProgress":   self.subtree_progress.to_dict(),
			"metadata":          copy.deepcopy(self.metadata),
			"isHeader":          self.is_header,
		}

	@classmethod
	def from_dict(cls, d: Mapping[str, Any]) -> "SkillNode":
		"""Build from a dict already normalised by validate_tree_data()."""
		icon = d.get("iconData")
		return cls(
			node_id=d["id"],
			label=d["label"],
			parent_id=d.get("parentId"),
			description=d.get("description", ""),
			completed=d.get("completed", False),
			prerequisites=d.get("prerequisites", []),
			icon_data=IconData.from_dict(icon) if icon is not None else None,
			weight=d.get("weight", CHILD_WEIGHT),
			is_header=d.get("isHeader", False),
			metadata=copy.deepcopy(dict(d.get("metadata") or {})),
		)

	def __repr__(self) -> str:
		status = "completed" if self.completed else ("locked" if self.locked else "open")
		return f"SkillNode({self.node_id!r}, {self.label!r}, w={self.weight}, {status})"


# ---------------------------------------------------------------------------
# Node factory
# ---------------------------------------------------------------------------
_id_seq = itertools.count()


def generate_id() -> str:
	"""node_<ms>_<seq><random>; the sequence keeps ids unique within the process."""
	return f"node_{int(time.time() * 1000)}_{next(_id_seq):x}{secrets.token_hex(3)}"


def create_node(
	label: str,
	parent_id: str | None = None,
	icon_data: IconData | Mapping | None = None,
) -> SkillNode:
	"""
	Create a fresh node (not attached to any tree).

	Roots start unlocked with weight 5 and the default root icon; children
	start locked behind their parent with weight 1 and no icon unless one is
	inherited.
	"""
	is_root = parent_id is None
	icon = IconData.coerce(icon_data)
	if icon is None and is_root:
		icon = IconData(type="emoji", icon="", color=ROOT_ICON_COLOR)
	return SkillNode(
		node_id=generate_id(),
		label=label or "",
		parent_id=parent_id,
		locked=not is_root,
		prerequisites=[] if is_root else [parent_id],
		icon_data=icon,
		weight=ROOT_WEIGHT if is_root else CHILD_WEIGHT,
	)


def edge_dict(source: str, target: str) -> dict[str, Any]:
	return {
		"group": "edges",
		"data": {"id": f"edge_{source}_{target}", "source": source, "target": target},
	}


# fields callers may change through update_node()
_UPDATABLE_FIELDS: frozenset[str] = frozenset({
	"label", "description", "completed", "icon_data",
	"weight", "is_header", "metadata", "prerequisites",
})
# fields whose change re-derives locks + completion
_RECALC_FIELDS: frozenset[str] = frozenset({
	"completed", "icon_data", "weight", "is_header", "prerequisites",
})


# ---------------------------------------------------------------------------
# SkillTree  (the engine)
# ---------------------------------------------------------------------------
class SkillTree:
	"""
	One skill tree: nodes, structural edges and the derived lock / progress
	state.

	Structural edges mirror parent_id exactly: edge (a, b) exists iff
	b.parent_id == a.  Prerequisites are a separate, usually identical, list
	per node and are what lock state is computed from.

	Unknown ids: delete_node() is a silent no-op, every other operation
	raises NotFoundError.
	"""

	__slots__ = (
		"nodes", "_children", "_edges",
		"version", "name", "description", "metadata",
	)

	def __init__(self, name: str = DEFAULT_TREE_NAME) -> None:
		self.nodes: dict[str, SkillNode] = {}
		self._children: dict[str, list[str]] = {}
		self._edges: list[tuple[str, str]] = []
		self.version: str = TREE_VERSION
		self.name: str = name
		self.description: str = ""
		self.metadata: dict[str, Any] = {}

	# ---- helpers -----------------------------------------------------------
	@property
	def num_nodes(self) -> int:
		return len(self.nodes)

	@property
	def root_id(self) -> str | None:
		for nid, node in self.nodes.items():
			if node.parent_id is None:
				return nid
		return None

	@property
	def edges(self) -> list[tuple[str, str]]:
		return list(self._edges)

	def get_node(self, node_id: str) -> SkillNode:
		try:
			return self.nodes[node_id]
		except KeyError:
			raise NotFoundError(node_id) from None

	def get_children(self, node_id: str) -> list[SkillNode]:
		self.get_node(node_id)
		return [self.nodes[cid] for cid in self._children[node_id]]

	def _insert(self, node: SkillNode) -> None:
		self.nodes[node.node_id] = node
		self._children[node.node_id] = []
		if node.parent_id is not None:
			self._children[node.parent_id].append(node.node_id)
			self._edges.append((node.parent_id, node.node_id))

	def _recalculate(self) -> None:
		self.recalculate_all_lock_states()
		self.update_all_subtree_completions()

	# ---- clear & reuse -----------------------------------------------------
	def clear(self) -> None:
		"""Wipe all nodes and edges so the same object can be reused."""
		self.nodes.clear()
		self._children.clear()
		self._edges.clear()

	def create_root(self, label: str = "Root", icon_data: IconData | Mapping | None = None) -> SkillNode:
		"""Insert the root.  A tree holds exactly one, so a second one is rejected."""
		if self.root_id is not None:
			raise InvalidOperationError("tree already has a root", reason="root-exists")
		node = create_node(label, None, icon_data)
		self._insert(node)
		self._recalculate()
		return node

	def new_tree(self, root_label: str = "Root Skill") -> SkillNode:
		self.clear()
		return self.create_root(root_label)

	# ---- mutations ---------------------------------------------------------
	def add_child_node(self, parent_id: str, label: str = "New Skill") -> SkillNode:
		"""Add a child under *parent_id*; it inherits a copy of the parent's icon."""
		parent = self.get_node(parent_id)
		node = create_node(label, parent_id, parent.icon_data)
		self._insert(node)
		self._recalculate()
		return node

	def delete_node(self, node_id: str) -> list[str]:
		"""
		Remove a node and its whole subtree.  Returns the removed ids (empty
		when *node_id* is unknown).  Removed ids are also dropped from the
		prerequisite lists of surviving nodes.
		"""
		if node_id not in self.nodes:
			return []
		removed = [node_id, *self.get_all_descendants(node_id)]
		gone = set(removed)

		parent_id = self.nodes[node_id].parent_id
		if parent_id is not None:
			self._children[parent_id].remove(node_id)
		for rid in removed:
			del self.nodes[rid]
			del self._children[rid]
		self._edges = [(s, t) for s, t in self._edges if s not in gone and t not in gone]

		for node in self.nodes.values():
			if any(p in gone for p in node.prerequisites):
				node.prerequisites = [p for p in node.prerequisites if p not in gone]

		self._recalculate()
		return removed

	def update_node(self, node_id: str, updates: Mapping[str, Any]) -> SkillNode:
		"""
		Partial update.  Only keys present in *updates* change, and only the
		enumerated updatable fields are accepted.  Everything is validated
		before the first field is written.

		Marking a node completed is refused while it is a header or locked;
		the lock is judged on the prerequisites the update leaves in place.
		Turning a node into a header clears its completion.  A colour change
		cascades down to every descendant's icon colour.
		"""
		node = self.get_node(node_id)
		unknown = sorted(k for k in updates if k not in _UPDATABLE_FIELDS)
		if unknown:
			raise ValidationError([f"field {k!r} cannot be updated" for k in unknown])
		changes = self._check_update(node, updates)

		old_color = node.icon_data.color if node.icon_data is not None else None
		for key, value in changes.items():
			setattr(node, key, value)
		if node.is_header:
			node.completed = False

		if "icon_data" in changes and node.icon_data is not None:
			new_color = node.icon_data.color
			if new_color and new_color != old_color:
				self._cascade_color(node_id, new_color)

		if _RECALC_FIELDS.intersection(changes):
			self._recalculate()
		return node

	def _check_update(self, node: SkillNode, updates: Mapping[str, Any]) -> dict[str, Any]:
		errors: list[str] = []
		changes: dict[str, Any] = {}
		for key, value in updates.items():
			if key in ("label", "description"):
				if isinstance(value, str):
					changes[key] = value
				else:
					errors.append(f"{key} must be a string")
			elif key in ("completed", "is_header"):
				if isinstance(value, bool):
					changes[key] = value
				else:
					errors.append(f"{key} must be a boolean")
			elif key == "weight":
				if is_int(value):
					changes[key] = clamp_weight(value)
				else:
					errors.append("weight must be an integer")
			elif key == "metadata":
				if isinstance(value, Mapping):
					changes[key] = copy.deepcopy(dict(value))
				else:
					errors.append("metadata must be an object")
			elif key == "icon_data":
				try:
					changes[key] = IconData.coerce(value)
				except ValidationError as exc:
					errors.extend(exc.errors)
			elif key == "prerequisites":
				if not isinstance(value, (list, tuple)) or not all(isinstance(p, str) for p in value):
					errors.append("prerequisites must be a list of ids")
					continue
				missing = [p for p in value if p not in self.nodes]
				if missing:
					errors.append(f"unknown prerequisite ids: {missing}")
				elif node.node_id in value:
					errors.append("a node cannot be its own prerequisite")
				else:
					changes[key] = list(dict.fromkeys(value))
		if errors:
			raise ValidationError(errors)

		if changes.get("completed") and not node.completed:
			if changes.get("is_header", node.is_header):
				raise InvalidOperationError("header nodes cannot be completed", reason="header")
			# judged against the prerequisites this same update leaves in place
			prereqs = changes.get("prerequisites", node.prerequisites)
			if not all(p in self.nodes and self.nodes[p].completed for p in prereqs):
				raise InvalidOperationError(
					f"node {node.node_id!r} is locked: prerequisites not met", reason="locked",
				)
		return changes

	def _cascade_color(self, node_id: str, color: str) -> None:
		"""Push *color* down to every descendant; icon type / glyph stay as they are."""
		for did in self.get_all_descendants(node_id):
			desc = self.nodes[did]
			if desc.icon_data is None:
				desc.icon_data = IconData(type="emoji", icon="", color=color)
			else:
				desc.icon_data.color = color

	def check_reparent(self, node_id: str, new_parent_id: str) -> None:
		"""Raise SelfParentError / CycleError if the move would break the tree."""
		self.get_node(node_id)
		self.get_node(new_parent_id)
		if node_id == new_parent_id:
			raise SelfParentError("cannot parent a node to itself")
		if new_parent_id in self.get_all_descendants(node_id):
			raise CycleError(
				f"cannot move {node_id!r} under its own descendant {new_parent_id!r}",
			)

	def can_reparent(self, node_id: str, new_parent_id: str) -> bool:
		"""Non-raising form of check_reparent() for drop-target previews."""
		try:
			self.check_reparent(node_id, new_parent_id)
		except InvalidOperationError:
			return False
		return True

	def reparent_node(self, node_id: str, new_parent_id: str) -> bool:
		"""
		Move *node_id* (with its subtree) under *new_parent_id*.  Its
		prerequisites become ``[new_parent_id]``.  Raises before mutating when
		the move is invalid; returns True once applied.
		"""
		self.check_reparent(node_id, new_parent_id)
		node = self.nodes[node_id]
		old_parent = node.parent_id
		if old_parent is not None:
			self._children[old_parent].remove(node_id)
			self._edges.remove((old_parent, node_id))

		node.parent_id = new_parent_id
		node.prerequisites = [new_parent_id]
		self._children[new_parent_id].append(node_id)
		self._edges.append((new_parent_id, node_id))

		self._recalculate()
		return True

	# ---- lock state & completion -------------------------------------------
	def recalculate_all_lock_states(self) -> None:
		"""
		Flat pass: a node is unlocked iff it has no prerequisites or every
		prerequisite exists and is completed.  Only direct prerequisites are
		consulted, never their ancestors.
		"""
		nodes = self.nodes
		for node in nodes.values():
			node.locked = not all(
				pid in nodes and nodes[pid].completed for pid in node.prerequisites
			)

	def walk_order(self) -> list[str]:
		"""BFS from every root; parents always precede their children."""
		order = [nid for nid, n in self.nodes.items() if n.parent_id is None]
		i = 0
		while i < len(order):
			order.extend(self._children[order[i]])
			i += 1
		return order

	def update_all_subtree_completions(self) -> None:
		"""Bottom-up: total(n) = weight(n) + Σ total(child), same for completed weight."""
		totals: dict[str, int] = {}
		done: dict[str, int] = {}
		for nid in reversed(self.walk_order()):
			node = self.nodes[nid]
			total = node.weight
			completed = node.weight if node.completed else 0
			for cid in self._children[nid]:
				total += totals[cid]
				completed += done[cid]
			totals[nid] = total
			done[nid] = completed
			node.subtree_progress = SubtreeProgress(completed=completed, total=total)
			node.subtree_completion = completed / total if total > 0 else 0.0

	def calculate_subtree_progress(self, node_id: str) -> SubtreeProgress:
		"""Weight sums over the node and its descendants, walked explicitly."""
		node = self.get_node(node_id)
		total = node.weight
		completed = node.weight if node.completed else 0
		for did in self.get_all_descendants(node_id):
			desc = self.nodes[did]
			total += desc.weight
			if desc.completed:
				completed += desc.weight
		return SubtreeProgress(completed=completed, total=total)

	def calculate_subtree_completion(self, node_id: str) -> float:
		return self.calculate_subtree_progress(node_id).ratio

	# ---- traversal ---------------------------------------------------------
	def get_all_descendants(self, node_id: str) -> list[str]:
		"""Breadth-first list of every descendant id (the node itself excluded)."""
		self.get_node(node_id)
		descendants: list[str] = []
		queue = deque(self._children[node_id])
		while queue:
			cid = queue.popleft()
			descendants.append(cid)
			queue.extend(self._children[cid])
		return descendants

	def get_all_ancestors(self, node_id: str) -> list[str]:
		"""Follow parent_id upward; closest ancestor first."""
		ancestors: list[str] = []
		cur = self.get_node(node_id).parent_id
		while cur is not None and cur in self.nodes:
			ancestors.append(cur)
			cur = self.nodes[cur].parent_id
		return ancestors

	def path_to(self, node_id: str) -> list[SkillNode]:
		"""Incomplete ancestors (root first) plus the node: what stands between the learner and it."""
		chain = [*reversed(self.get_all_ancestors(node_id)), node_id]
		return [self.nodes[nid] for nid in chain if not self.nodes[nid].completed]

	# ---- progress ----------------------------------------------------------
	def get_completed(self) -> list[SkillNode]:
		return [n for n in self.nodes.values() if n.completed]

	def get_available(self) -> list[SkillNode]:
		"""Unlocked, not yet completed, completable (headers excluded)."""
		return [
			n for n in self.nodes.values()
			if not n.completed and not n.locked and not n.is_header
		]

	def get_locked(self) -> list[SkillNode]:
		return [n for n in self.nodes.values() if n.locked]

	def calculate_progress(self) -> int:
		"""Unweighted percentage of nodes completed, rounded."""
		if not self.nodes:
			return 0
		return round(len(self.get_completed()) / len(self.nodes) * 100)

	def reset_progress(self) -> None:
		"""Clear completion on every node (keeps structure)."""
		for node in self.nodes.values():
			node.completed = False
			if "completedAt" in node.metadata:
				node.metadata["completedAt"] = None
		self._recalculate()

	# ---- serialisation -----------------------------------------------------
	def _document(self, name: str, node_ids: list[str], edges: list[tuple[str, str]]) -> dict[str, Any]:
		return {
			"version":     self.version,
			"name":        name,
			"description": self.description,
			"nodes":       [{"group": "nodes", "data": self.nodes[nid].to_dict()} for nid in node_ids],
			"edges":       [edge_dict(s, t) for s, t in edges],
			"metadata":    copy.deepcopy(self.metadata),
		}

	def get_tree_data(self) -> dict[str, Any]:
		"""Full TreeData document, nodes and edges in insertion order."""
		return self._document(self.name, list(self.nodes), self._edges)

	def get_subtree_data(self, node_id: str) -> dict[str, Any]:
		"""The node, its descendants and only the edges fully inside that set."""
		ids = [node_id, *self.get_all_descendants(node_id)]
		inside = set(ids)
		edges = [(s, t) for s, t in self._edges if s in inside and t in inside]
		return self._document("Subtree", ids, edges)

	def load_tree(self, tree_data: Mapping[str, Any]) -> None:
		"""
		Replace the whole tree with *tree_data*.

		The payload is validated first; on ValidationError the current tree is
		left untouched.  Derived fields in the payload are discarded and
		recomputed.
		"""
		node_dicts, edge_pairs = validate_tree_data(tree_data)

		nodes = {d["id"]: SkillNode.from_dict(d) for d in node_dicts}
		children: dict[str, list[str]] = {nid: [] for nid in nodes}
		edges = list(edge_pairs)
		present = set(edge_pairs)
		for node in nodes.values():
			if node.parent_id is None:
				continue
			children[node.parent_id].append(node.node_id)
			if (node.parent_id, node.node_id) not in present:
				edges.append((node.parent_id, node.node_id))

		self.nodes = nodes
		self._children = children
		self._edges = edges
		self.version = str(tree_data.get("version") or TREE_VERSION)
		self.name = str(tree_data.get("name") or DEFAULT_TREE_NAME)
		self.description = str(tree_data.get("description") or "")
		self.metadata = copy.deepcopy(dict(tree_data.get("metadata") or {}))
		self._recalculate()

	@classmethod
	def from_tree_data(cls, tree_data: Mapping[str, Any]) -> "SkillTree":
		tree = cls()
		tree.load_tree(tree_data)
		return tree

	# ---- pretty printing ---------------------------------------------------
	def print_tree(self) -> None:
		print(f"=== {self.name} ===")
		for nid in self.walk_order():
			node = self.nodes[nid]
			depth = len(self.get_all_ancestors(nid))
			status = "[x]" if node.completed else ("[locked]" if node.locked else "[ ]")
			if node.is_header:
				status = "[#]"
			p = node.subtree_progress
			print(f"  {'  ' * depth}{status} {node.label or '(untitled)'}  w={node.weight}  {p.completed}/{p.total}")
		print(f"\nProgress: {self.calculate_progress()}%  ({len(self.get_completed())}/{self.num_nodes} skills completed)")


# ---------------------------------------------------------------------------
# Sample tree
# ---------------------------------------------------------------------------
SAMPLE_TREE_OUTLINE: dict[str, list[str]] = {
	"Python":          ["Syntax Basics", "Data Structures", "Tooling"],
	"Syntax Basics":   ["Functions", "Control Flow"],
	"Data Structures": ["Comprehensions"],
	"Tooling":         ["Testing", "Packaging"],
}


def build_sample_skill_tree() -> SkillTree:
	"""Small Python-learning tree built through the public operations."""
	tree = SkillTree(name="Sample Tree")
	root = tree.create_root("Python")
	pending = deque([(root.node_id, root.label)])
	while pending:
		parent_id, label = pending.popleft()
		for child_label in SAMPLE_TREE_OUTLINE.get(label, []):
			child = tree.add_child_node(parent_id, child_label)
			pending.append((child.node_id, child_label))
	return tree


# ---------------------------------------------------------------------------
# Demo
# ---------------------------------------------------------------------------
if __name__ == "__main__":
	tree = build_sample_skill_tree()
	tree.print_tree()

	print("\n>>> Completing: Python, Syntax Basics")
	root_id = tree.root_id
	tree.update_node(root_id, {"completed": True})
	basics = next(n for n in tree.nodes.values() if n.label == "Syntax Basics")
	tree.update_node(basics.node_id, {"completed": True, "weight": 3})

	print("\n--- Available now ---")
	for n in tree.get_available():
		print(f"  • {n.label}")

	print("\n>>> Recolouring the root")
	tree.update_node(root_id, {"icon_data": {"type": "emoji", "icon": "🐍", "color": "#10b981"}})
	tree.print_tree()
