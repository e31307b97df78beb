"""
Skill-tree payload validation
-----------------------------
Checks a ``TreeData`` document before anything touches engine state, so a
load / import either applies completely or not at all.

  • Accepts the element form  {"group": "nodes", "data": {...}}  and the flat
    legacy form  {...}  for nodes, and both forms for edges
  • Reports every problem it finds in one ValidationError, not just the first
  • Normalises optional fields (defaults, weight clamping, prerequisite
    de-duplication) so the engine can trust what it receives
"""
from collections.abc import Mapping
from typing import Any


MIN_WEIGHT = 1
MAX_WEIGHT = 10

ICON_TYPES: frozenset[str] = frozenset({"emoji", "image", "svg"})

# wire (camelCase) → engine update key
_UPDATE_KEYS: dict[str, str] = {
	"label":         "label",
	"description":   "description",
	"completed":     "completed",
	"iconData":      "icon_data",
	"weight":        "weight",
	"isHeader":      "is_header",
	"metadata":      "metadata",
	"prerequisites": "prerequisites",
}


class ValidationError(ValueError):
	"""Malformed input to load / import / update.  ``errors`` lists every problem."""

	def __init__(self, errors: list[str] | str) -> None:
		if isinstance(errors, str):
			errors = [errors]
		self.errors: list[str] = list(errors)
		super().__init__("; ".join(self.errors))


def clamp_weight(value: int) -> int:
	return max(MIN_WEIGHT, min(MAX_WEIGHT, int(value)))


def is_int(value: Any) -> bool:
	return isinstance(value, int) and not isinstance(value, bool)


def icon_data_errors(value: Any, where: str = "iconData") -> list[str]:
	"""Problems with an iconData value (None is allowed)."""
	if value is None:
		return []
	if not isinstance(value, Mapping):
		return [f"{where} must be an object or null"]
	errors = []
	icon_type = value.get("type", "emoji")
	if icon_type not in ICON_TYPES:
		errors.append(f"{where}.type must be one of {sorted(ICON_TYPES)}")
	if not isinstance(value.get("icon", ""), str):
		errors.append(f"{where}.icon must be a string")
	for key in ("color", "backgroundColor"):
		if value.get(key) is not None and not isinstance(value[key], str):
			errors.append(f"{where}.{key} must be a string or null")
	return errors


def _unwrap(entry: Any) -> Any:
	"""Element form → its data dict; flat form passes through."""
	if isinstance(entry, Mapping) and isinstance(entry.get("data"), Mapping):
		return entry["data"]
	return entry


def _dedupe(ids: list[str]) -> list[str]:
	return list(dict.fromkeys(ids))


# ---------------------------------------------------------------------------
# Per-node normalisation
# ---------------------------------------------------------------------------
def _normalise_node(raw: Any, index: int, errors: list[str]) -> dict | None:
	where = f"nodes[{index}]"
	if not isinstance(raw, Mapping):
		errors.append(f"{where} must be an object")
		return None

	node_id = raw.get("id")
	if not isinstance(node_id, str) or not node_id:
		errors.append(f"{where} missing id field")
		return None
	where = f"node {node_id!r}"

	ok = True
	label = raw.get("label")
	if not isinstance(label, str):
		errors.append(f"{where} missing label field")
		ok = False

	# legacy NodeData used "parent" instead of "parentId"
	parent_id = raw.get("parentId", raw.get("parent"))
	if parent_id is not None and not isinstance(parent_id, str):
		errors.append(f"{where} parentId must be a string or null")
		ok = False

	prereqs = raw.get("prerequisites")
	if prereqs is None:
		prereqs = [parent_id] if parent_id else []
	elif not isinstance(prereqs, list) or not all(isinstance(p, str) for p in prereqs):
		errors.append(f"{where} prerequisites must be a list of ids")
		ok = False

	description = raw.get("description") or ""
	if not isinstance(description, str):
		errors.append(f"{where} description must be a string")
		ok = False

	weight = raw.get("weight", MIN_WEIGHT)
	if not is_int(weight):
		errors.append(f"{where} weight must be an integer")
		ok = False

	for flag in ("completed", "isHeader"):
		if not isinstance(raw.get(flag, False), bool):
			errors.append(f"{where} {flag} must be a boolean")
			ok = False

	metadata = raw.get("metadata") or {}
	if not isinstance(metadata, Mapping):
		errors.append(f"{where} metadata must be an object")
		ok = False

	icon_problems = icon_data_errors(raw.get("iconData"), f"{where} iconData")
	if icon_problems:
		errors.extend(icon_problems)
		ok = False

	if not ok:
		return None

	is_header = raw.get("isHeader", False)
	return {
		"id":            node_id,
		"label":         label,
		"description":   description,
		# header nodes are never completed
		"completed":     raw.get("completed", False) and not is_header,
		"parentId":      parent_id,
		"prerequisites": _dedupe(prereqs),
		"iconData":      dict(raw["iconData"]) if raw.get("iconData") is not None else None,
		"weight":        clamp_weight(weight),
		"metadata":      dict(metadata),
		"isHeader":      is_header,
	}


# ---------------------------------------------------------------------------
# Whole-document validation
# ---------------------------------------------------------------------------
def validate_tree_data(data: Any) -> tuple[list[dict], list[tuple[str, str]]]:
	"""
	Validate a TreeData document.

	Returns ``(nodes, edges)``: normalised node dicts in payload order and the
	payload's structural edges as ``(source, target)`` pairs (duplicates
	dropped).  Raises ValidationError listing every problem otherwise.

	Derived fields (locked, subtreeCompletion, subtreeProgress) are ignored;
	the engine recomputes them after loading.
	"""
	if not isinstance(data, Mapping):
		raise ValidationError("no tree data provided")
	raw_nodes = data.get("nodes")
	raw_edges = data.get("edges")
	errors: list[str] = []
	if not isinstance(raw_nodes, list):
		errors.append("missing or invalid nodes array")
	if not isinstance(raw_edges, list):
		errors.append("missing or invalid edges array")
	if errors:
		raise ValidationError(errors)

	nodes: list[dict] = []
	seen: set[str] = set()
	for i, raw in enumerate(raw_nodes):
		node = _normalise_node(_unwrap(raw), i, errors)
		if node is None:
			continue
		if node["id"] in seen:
			errors.append(f"duplicate node id {node['id']!r}")
			continue
		seen.add(node["id"])
		nodes.append(node)
	if errors:
		raise ValidationError(errors)

	by_id = {n["id"]: n for n in nodes}
	roots = [n["id"] for n in nodes if n["parentId"] is None]
	if nodes and len(roots) != 1:
		errors.append(f"tree must have exactly one root, found {len(roots)}")

	for n in nodes:
		if n["parentId"] is not None and n["parentId"] not in by_id:
			errors.append(f"node {n['id']!r} references missing parent {n['parentId']!r}")
		if n["id"] in n["prerequisites"]:
			errors.append(f"node {n['id']!r} lists itself as a prerequisite")
		for pid in n["prerequisites"]:
			if pid not in by_id:
				errors.append(f"node {n['id']!r} references missing prerequisite {pid!r}")

	if not errors:
		errors.extend(_parent_cycle_errors(by_id))

	edges: list[tuple[str, str]] = []
	for i, raw in enumerate(raw_edges):
		edge = _unwrap(raw)
		if not isinstance(edge, Mapping):
			errors.append(f"edges[{i}] must be an object")
			continue
		src, dst = edge.get("source"), edge.get("target")
		if src not in by_id or dst not in by_id:
			errors.append(f"edges[{i}] references a missing node ({src!r} → {dst!r})")
			continue
		if by_id[dst]["parentId"] != src:
			errors.append(f"edges[{i}] ({src!r} → {dst!r}) disagrees with parentId of {dst!r}")
			continue
		if (src, dst) not in edges:
			edges.append((src, dst))

	if errors:
		raise ValidationError(errors)
	return nodes, edges


def _parent_cycle_errors(by_id: dict[str, dict]) -> list[str]:
	"""Walk parentId upward from every node; each node is checked once."""
	errors = []
	cleared: set[str] = set()
	for start in by_id:
		path: list[str] = []
		on_path: set[str] = set()
		cur = start
		while cur is not None and cur not in cleared:
			if cur in on_path:
				errors.append(f"parent cycle through {cur!r}")
				break
			on_path.add(cur)
			path.append(cur)
			cur = by_id[cur]["parentId"]
		cleared.update(path)
	return errors


# ---------------------------------------------------------------------------
# Partial updates arriving over the wire
# ---------------------------------------------------------------------------
def node_update_from_wire(payload: Any) -> dict[str, Any]:
	"""Map a camelCase partial update to engine update keys; reject anything else."""
	if not isinstance(payload, Mapping):
		raise ValidationError("update must be an object")
	unknown = sorted(k for k in payload if k not in _UPDATE_KEYS)
	if unknown:
		raise ValidationError([f"field {k!r} cannot be updated" for k in unknown])
	return {_UPDATE_KEYS[k]: v for k, v in payload.items()}
