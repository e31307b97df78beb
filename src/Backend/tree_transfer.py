"""
Skill-tree transfer: export, import, merge, skillset copy
---------------------------------------------------------
Everything that moves nodes *between* trees lives here, outside the engine:

  • create_export_format()  — downloadable envelope around a TreeData document
  • remap_ids()             — fresh engine ids for every node, references rewritten
  • merge_trees()           — graft an imported tree under a node of the current one
  • import_tree()           — replace / merge into a live SkillTree, optional progress reset
  • copy_subtree()          — copy a node + descendants from another tree
  • tree_data_from_generated() — turn an AI candidate (caller-local ids) into a payload

The engine never resolves id collisions itself; every path that brings in
foreign nodes goes through remap_ids() first.
"""
import copy
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from skill_tree import (
	CHILD_WEIGHT,
	DEFAULT_TREE_NAME,
	ROOT_WEIGHT,
	TREE_VERSION,
	NotFoundError,
	SkillTree,
	edge_dict,
	generate_id,
)
from tree_validation import (
	ValidationError,
	clamp_weight,
	icon_data_errors,
	is_int,
	validate_tree_data,
)

log = logging.getLogger(__name__)

IMPORT_MODES: frozenset[str] = frozenset({"replace", "merge"})


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _document(
	source: Mapping[str, Any],
	nodes: list[dict],
	edges: list[tuple[str, str]],
	name: str | None = None,
) -> dict[str, Any]:
	"""Element-form TreeData carrying *source*'s tree-level fields."""
	return {
		"version":     source.get("version") or TREE_VERSION,
		"name":        name or source.get("name") or DEFAULT_TREE_NAME,
		"description": source.get("description") or "",
		"nodes":       [{"group": "nodes", "data": n} for n in nodes],
		"edges":       [edge_dict(s, t) for s, t in edges],
		"metadata":    copy.deepcopy(dict(source.get("metadata") or {})),
	}


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------
def create_export_format(tree_data: Mapping[str, Any], name: str = "Skill Tree") -> dict[str, Any]:
	"""Wrap a TreeData document for download / sharing."""
	nodes, edges = validate_tree_data(tree_data)
	now = _now_iso()
	doc = _document(tree_data, nodes, edges, name=name)
	doc["root"] = next((n["id"] for n in nodes if n["parentId"] is None), None)
	doc["metadata"].update({"created": doc["metadata"].get("created", now), "modified": now})
	doc["exportedAt"] = now
	doc["exportFormat"] = "json"
	return doc


# ---------------------------------------------------------------------------
# Id remapping & progress reset
# ---------------------------------------------------------------------------
def remap_ids(tree_data: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
	"""
	Copy *tree_data* with a fresh id for every node.  parentId, prerequisites
	and edges are rewritten through the same map.  Returns (document, id_map).
	"""
	nodes, edges = validate_tree_data(tree_data)
	id_map = {n["id"]: generate_id() for n in nodes}
	for n in nodes:
		n["id"] = id_map[n["id"]]
		if n["parentId"] is not None:
			n["parentId"] = id_map[n["parentId"]]
		n["prerequisites"] = [id_map[p] for p in n["prerequisites"]]
	new_edges = [(id_map[s], id_map[t]) for s, t in edges]
	return _document(tree_data, nodes, new_edges), id_map


def reset_completion(tree_data: Mapping[str, Any]) -> dict[str, Any]:
	"""Copy of *tree_data* with every node incomplete and completedAt cleared."""
	nodes, edges = validate_tree_data(tree_data)
	for n in nodes:
		n["completed"] = False
		if "completedAt" in n["metadata"]:
			n["metadata"]["completedAt"] = None
	return _document(tree_data, nodes, edges)


# ---------------------------------------------------------------------------
# Merge / import
# ---------------------------------------------------------------------------
def merge_trees(
	current: Mapping[str, Any],
	imported: Mapping[str, Any],
	attach_to: str | None = None,
) -> dict[str, Any]:
	"""
	Merge *imported* into *current*.  Imported nodes get fresh ids and the
	imported root is re-parented under *attach_to* (default: current root),
	so the result still has a single root.  An empty *current* simply takes
	the (remapped) import.
	"""
	cur_nodes, cur_edges = validate_tree_data(current)
	incoming_doc, _ = remap_ids(imported)
	if not cur_nodes:
		return incoming_doc

	in_nodes, in_edges = validate_tree_data(incoming_doc)
	if not in_nodes:
		return _document(current, cur_nodes, cur_edges)

	target = attach_to or next(n["id"] for n in cur_nodes if n["parentId"] is None)
	if target not in {n["id"] for n in cur_nodes}:
		raise NotFoundError(target)

	in_root = next(n for n in in_nodes if n["parentId"] is None)
	in_root["parentId"] = target
	in_root["prerequisites"] = [target]

	return _document(
		current,
		cur_nodes + in_nodes,
		cur_edges + [(target, in_root["id"])] + in_edges,
	)


def import_tree(
	tree: SkillTree,
	data: Mapping[str, Any],
	mode: str = "replace",
	reset: bool = False,
) -> int:
	"""
	Load *data* into a live tree, either replacing it or merging under its
	root.  Returns the number of nodes imported.
	"""
	if mode not in IMPORT_MODES:
		raise ValidationError(f"import mode must be one of {sorted(IMPORT_MODES)}")
	if reset:
		data = reset_completion(data)

	if mode == "replace":
		tree.load_tree(data)
		count = tree.num_nodes
	else:
		before = tree.num_nodes
		tree.load_tree(merge_trees(tree.get_tree_data(), data))
		count = tree.num_nodes - before
	log.info("import  mode=%s  nodes=%d  reset=%s", mode, count, reset)
	return count


def _detached(subtree: Mapping[str, Any], root_id: str) -> dict[str, Any]:
	"""Subtree document as a standalone tree: its top node becomes the root."""
	doc = copy.deepcopy(dict(subtree))
	inside = set()
	for entry in doc["nodes"]:
		inside.add(entry["data"]["id"])
	for entry in doc["nodes"]:
		data = entry["data"]
		if data["id"] == root_id:
			data["parentId"] = None
			data["prerequisites"] = []
		else:
			data["prerequisites"] = [p for p in data["prerequisites"] if p in inside]
	return doc


def copy_subtree(
	target: SkillTree,
	source_tree_data: Mapping[str, Any],
	node_id: str,
	attach_to: str | None = None,
	reset: bool = False,
) -> int:
	"""
	Copy *node_id* and its descendants from another tree into *target*,
	attached under *attach_to* (default: target root).  An empty target gets
	a blank root first.  Returns the number of nodes copied.
	"""
	source = SkillTree.from_tree_data(source_tree_data)
	subtree = _detached(source.get_subtree_data(node_id), node_id)
	if reset:
		subtree = reset_completion(subtree)
	if attach_to is not None:
		target.get_node(attach_to)
	if target.root_id is None:
		target.create_root("")

	before = target.num_nodes
	target.load_tree(merge_trees(target.get_tree_data(), subtree, attach_to))
	copied = target.num_nodes - before
	log.info("copy-subtree  node=%s  copied=%d", node_id, copied)
	return copied


# ---------------------------------------------------------------------------
# AI-generated candidates
# ---------------------------------------------------------------------------
def tree_data_from_generated(candidate: Any, name: str = "Generated Tree") -> dict[str, Any]:
	"""
	Translate a generated node list into a loadable TreeData document.

	Candidates link nodes with their own ids (``parent`` or ``parentId``);
	every node is re-issued an engine id.  Completion / lock state from the
	candidate is discarded.  Unknown prerequisite ids and malformed icons are
	dropped with a warning; structural problems raise ValidationError.
	"""
	if not isinstance(candidate, Mapping) or not isinstance(candidate.get("nodes"), list):
		raise ValidationError("generated tree must be an object with a nodes array")
	raw_nodes = [n.get("data", n) if isinstance(n, Mapping) else n for n in candidate["nodes"]]
	if not raw_nodes:
		raise ValidationError("generated tree has no nodes")

	errors: list[str] = []
	id_map: dict[str, str] = {}
	for i, raw in enumerate(raw_nodes):
		local = raw.get("id") if isinstance(raw, Mapping) else None
		if not isinstance(local, str) or not local:
			errors.append(f"generated node {i} has no id")
		elif local in id_map:
			errors.append(f"generated node id {local!r} is duplicated")
		else:
			id_map[local] = generate_id()
	if errors:
		raise ValidationError(errors)

	nodes: list[dict] = []
	for raw in raw_nodes:
		local = raw["id"]
		parent_local = raw.get("parentId", raw.get("parent"))
		if parent_local is not None and (not isinstance(parent_local, str) or parent_local not in id_map):
			errors.append(f"generated node {local!r} has unknown parent {parent_local!r}")
			continue
		parent_id = id_map[parent_local] if parent_local is not None else None

		prereqs = raw.get("prerequisites")
		if isinstance(prereqs, list):
			unknown = [p for p in prereqs if not isinstance(p, str) or p not in id_map]
			if unknown:
				log.warning("generated node %r: dropping unknown prerequisites %s", local, unknown)
			prereqs = [id_map[p] for p in prereqs if isinstance(p, str) and p in id_map and p != local]
		else:
			prereqs = [parent_id] if parent_id else []

		icon = raw.get("iconData")
		if icon_data_errors(icon):
			log.warning("generated node %r: dropping malformed iconData", local)
			icon = None

		weight = raw.get("weight")
		if not is_int(weight):
			weight = CHILD_WEIGHT if parent_id else ROOT_WEIGHT

		nodes.append({
			"id":            id_map[local],
			"label":         str(raw.get("label") or ""),
			"description":   str(raw.get("description") or ""),
			"completed":     False,
			"parentId":      parent_id,
			"prerequisites": prereqs,
			"iconData":      dict(icon) if icon is not None else None,
			"weight":        clamp_weight(weight),
			"metadata":      {},
			"isHeader":      bool(raw.get("isHeader", False)),
		})
	if errors:
		raise ValidationError(errors)

	edges = [(n["parentId"], n["id"]) for n in nodes if n["parentId"] is not None]
	doc = _document({"name": name}, nodes, edges)
	# single root, no parent cycles
	validate_tree_data(doc)
	log.info("generated  nodes=%d  name=%r", len(nodes), name)
	return doc
