"""
SkillForest — Flask REST API
============================
Exposes the skill-tree engine (SkillTree + transfer / stats helpers) as JSON
endpoints that the canvas frontend can consume.

Trees live in an in-memory LRU store keyed by tree id.  Every store entry
carries its own lock, so mutations on one tree are serialised while other
trees stay independent.

Endpoints
---------
GET    /api/health                                  — Health check
GET    /api/trees                                   — List stored trees
POST   /api/trees                                   — New tree ({name, rootLabel} or {data})
POST   /api/trees/generated                         — Tree from an AI candidate
GET    /api/trees/<id>                              — Full TreeData
PUT    /api/trees/<id>                              — Replace with {data}
DELETE /api/trees/<id>                              — Drop from the store
POST   /api/trees/<id>/nodes                        — Add child ({parentId, label})
PATCH  /api/trees/<id>/nodes/<node_id>              — Partial node update
DELETE /api/trees/<id>/nodes/<node_id>              — Cascading delete
POST   /api/trees/<id>/nodes/<node_id>/reparent     — Move under {newParentId}
GET    /api/trees/<id>/nodes/<node_id>/subtree      — Subtree TreeData
GET    /api/trees/<id>/progress                     — Completed / available / locked
GET    /api/trees/<id>/stats                        — Per-depth weight breakdown
GET    /api/trees/<id>/export                       — Download envelope
POST   /api/trees/<id>/import                       — Replace / merge ({data, mode, resetCompletion})
POST   /api/trees/<id>/copy                         — Copy a subtree from another stored tree
"""
from __future__ import annotations

import functools
import logging
import threading
import traceback
import uuid
from collections import OrderedDict
from typing import Any

from flask import Flask, jsonify, request
from flask_cors import CORS

# ── Backend imports ─────────────────────────────────────────────────
from skill_tree import (
    DEFAULT_TREE_NAME,
    InvalidOperationError,
    NotFoundError,
    SkillTree,
)
from tree_config import load_config
from tree_stats import tree_stats
from tree_transfer import (
    copy_subtree,
    create_export_format,
    import_tree,
    tree_data_from_generated,
)
from tree_validation import ValidationError, node_update_from_wire

# ── App setup ───────────────────────────────────────────────────────
config = load_config()

app = Flask(__name__)
CORS(app, origins=config.cors_origins)

logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s  %(message)s",
)
log = logging.getLogger(__name__)

# In-memory tree store: tree id → (SkillTree, per-tree lock)
# OrderedDict with LRU eviction caps memory at _TREE_STORE_MAX entries.
_TREE_STORE_MAX = config.store_max
_tree_store: OrderedDict[str, tuple[SkillTree, threading.Lock]] = OrderedDict()
_store_lock = threading.Lock()


def _store_tree(tree: SkillTree) -> str:
    """Thread-safe LRU insert; returns the tree id."""
    tree_id = uuid.uuid4().hex
    with _store_lock:
        _tree_store[tree_id] = (tree, threading.Lock())
        while len(_tree_store) > _TREE_STORE_MAX:
            evicted, _ = _tree_store.popitem(last=False)
            log.info("store  evicted tree=%s", evicted)
    return tree_id


def _get_tree(tree_id: str) -> tuple[SkillTree, threading.Lock] | None:
    """Thread-safe LRU lookup."""
    with _store_lock:
        entry = _tree_store.get(tree_id)
        if entry is not None:
            _tree_store.move_to_end(tree_id)
        return entry


def _drop_tree(tree_id: str) -> bool:
    with _store_lock:
        return _tree_store.pop(tree_id, None) is not None


# ═══════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════
def _body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _optional_id(body: dict[str, Any], key: str) -> str | None:
    """A node id field that may be omitted or null; anything else must be a string."""
    value = body.get(key)
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string")
    return value


def _no_tree(tree_id: str):
    return jsonify({"error": f"no tree stored for '{tree_id}'"}), 404


def _tree_payload(tree_id: str, tree: SkillTree) -> dict[str, Any]:
    return {"id": tree_id, "tree": tree.get_tree_data()}


def _summary(tree_id: str, tree: SkillTree) -> dict[str, Any]:
    return {
        "id":       tree_id,
        "name":     tree.name,
        "numNodes": tree.num_nodes,
        "progress": tree.calculate_progress(),
    }


def _json_errors(action: str):
    """
    Map engine errors onto HTTP responses:

      ValidationError        → 400  (+ every problem in ``errors``)
      NotFoundError          → 404
      InvalidOperationError  → 409  (+ machine-readable ``reason``)
      anything else          → 500, logged with traceback
    """
    def decorate(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except ValidationError as exc:
                return jsonify({"error": str(exc), "errors": exc.errors}), 400
            except NotFoundError as exc:
                return jsonify({"error": str(exc)}), 404
            except InvalidOperationError as exc:
                return jsonify({"error": str(exc), "reason": exc.reason}), 409
            except Exception as exc:
                log.error("%s failed: %s\n%s", action, exc, traceback.format_exc())
                return jsonify({"error": str(exc)}), 500
        return wrapper
    return decorate


# ═══════════════════════════════════════════════════════════════════
# Routes: trees
# ═══════════════════════════════════════════════════════════════════
@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "trees": len(_tree_store)})


@app.route("/api/trees", methods=["GET"])
def list_trees():
    with _store_lock:
        entries = list(_tree_store.items())
    summaries = []
    for tid, (tree, lock) in entries:
        with lock:
            summaries.append(_summary(tid, tree))
    return jsonify({"trees": summaries})


@app.route("/api/trees", methods=["POST"])
@_json_errors("create-tree")
def create_tree():
    """
    Create a tree.

    Request JSON:  { "name": "Python", "rootLabel": "Python" }
                or { "data": <TreeData> }
    Response JSON: { "id": "...", "tree": <TreeData> }   (201)
    """
    body = _body()
    if "data" in body:
        tree = SkillTree.from_tree_data(body["data"])
    else:
        name = body.get("name") or DEFAULT_TREE_NAME
        if not isinstance(name, str):
            raise ValidationError("name must be a string")
        tree = SkillTree(name=name)
        root_label = body.get("rootLabel")
        if root_label is not None:
            if not isinstance(root_label, str):
                raise ValidationError("rootLabel must be a string")
            tree.create_root(root_label)

    tree_id = _store_tree(tree)
    log.info("create  tree=%s  name=%r  nodes=%d", tree_id, tree.name, tree.num_nodes)
    return jsonify(_tree_payload(tree_id, tree)), 201


@app.route("/api/trees/generated", methods=["POST"])
@_json_errors("generated")
def create_generated_tree():
    """
    Create a tree from an AI-generated candidate that uses its own node ids.

    Request JSON:  { "candidate": { "nodes": [ {id, label, parentId?, ...} ] },
                     "name": "Rust" }
    Response JSON: { "id": "...", "tree": <TreeData> }   (201)
    """
    body = _body()
    name = body.get("name") or "Generated Tree"
    doc = tree_data_from_generated(body.get("candidate"), name=str(name))
    tree = SkillTree.from_tree_data(doc)
    tree_id = _store_tree(tree)
    return jsonify(_tree_payload(tree_id, tree)), 201


@app.route("/api/trees/<tree_id>", methods=["GET"])
def get_tree(tree_id: str):
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    tree, lock = entry
    with lock:
        return jsonify(_tree_payload(tree_id, tree))


@app.route("/api/trees/<tree_id>", methods=["PUT"])
@_json_errors("replace-tree")
def replace_tree(tree_id: str):
    """Replace the stored tree with { "data": <TreeData> }; rejected payloads leave it untouched."""
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    body = _body()
    if "data" not in body:
        raise ValidationError("missing 'data' field")

    tree, lock = entry
    with lock:
        tree.load_tree(body["data"])
        return jsonify(_tree_payload(tree_id, tree))


@app.route("/api/trees/<tree_id>", methods=["DELETE"])
def delete_tree(tree_id: str):
    if not _drop_tree(tree_id):
        return _no_tree(tree_id)
    log.info("delete  tree=%s", tree_id)
    return jsonify({"deleted": tree_id})


# ═══════════════════════════════════════════════════════════════════
# Routes: nodes
# ═══════════════════════════════════════════════════════════════════
@app.route("/api/trees/<tree_id>/nodes", methods=["POST"])
@_json_errors("add-node")
def add_node(tree_id: str):
    """
    Add a node.  Without ``parentId`` the node becomes the root, which fails
    with 409 (reason "root-exists") once the tree has one.

    Request JSON:  { "parentId": "node_...", "label": "Functions" }
    Response JSON: { "node": <NodeData>, "tree": <TreeData> }   (201)
    """
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    body = _body()
    parent_id = _optional_id(body, "parentId")
    label = body.get("label")
    if label is not None and not isinstance(label, str):
        raise ValidationError("label must be a string")

    tree, lock = entry
    with lock:
        if parent_id is None:
            node = tree.create_root(label if label is not None else "Root Skill")
        else:
            node = tree.add_child_node(parent_id, label if label is not None else "New Skill")
        return jsonify({"node": node.to_dict(), "tree": tree.get_tree_data()}), 201


@app.route("/api/trees/<tree_id>/nodes/<node_id>", methods=["PATCH"])
@_json_errors("update-node")
def update_node(tree_id: str, node_id: str):
    """
    Partial update with camelCase fields (label, description, completed,
    iconData, weight, isHeader, metadata, prerequisites).

    Completing a locked node → 409 "locked"; a header → 409 "header".
    """
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    updates = node_update_from_wire(_body())

    tree, lock = entry
    with lock:
        node = tree.update_node(node_id, updates)
        return jsonify({"node": node.to_dict(), "tree": tree.get_tree_data()})


@app.route("/api/trees/<tree_id>/nodes/<node_id>", methods=["DELETE"])
@_json_errors("delete-node")
def delete_node(tree_id: str, node_id: str):
    """Cascading delete.  An unknown node id removes nothing (``removed`` is empty)."""
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    tree, lock = entry
    with lock:
        removed = tree.delete_node(node_id)
        return jsonify({"removed": removed, "tree": tree.get_tree_data()})


@app.route("/api/trees/<tree_id>/nodes/<node_id>/reparent", methods=["POST"])
@_json_errors("reparent")
def reparent_node(tree_id: str, node_id: str):
    """
    Move a node (with its subtree) under another node.

    Request JSON:  { "newParentId": "node_..." }
    Self-parenting → 409 "self-parent"; moving under a descendant → 409 "cycle".
    """
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    new_parent_id = _body().get("newParentId")
    if not isinstance(new_parent_id, str) or not new_parent_id:
        raise ValidationError("missing 'newParentId' field")

    tree, lock = entry
    with lock:
        tree.reparent_node(node_id, new_parent_id)
        return jsonify({"success": True, "tree": tree.get_tree_data()})


@app.route("/api/trees/<tree_id>/nodes/<node_id>/subtree", methods=["GET"])
@_json_errors("subtree")
def get_subtree(tree_id: str, node_id: str):
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    tree, lock = entry
    with lock:
        return jsonify(tree.get_subtree_data(node_id))


# ═══════════════════════════════════════════════════════════════════
# Routes: progress & stats
# ═══════════════════════════════════════════════════════════════════
@app.route("/api/trees/<tree_id>/progress", methods=["GET"])
def get_progress(tree_id: str):
    """
    Response JSON: { "progress": 42, "overallCompletion": 0.37,
                     "completed": [...], "available": [...], "locked": [...] }
    """
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    tree, lock = entry
    with lock:
        root_id = tree.root_id
        return jsonify({
            "progress":          tree.calculate_progress(),
            "overallCompletion": tree.nodes[root_id].subtree_completion if root_id else 0.0,
            "completed":         [n.node_id for n in tree.get_completed()],
            "available":         [n.node_id for n in tree.get_available()],
            "locked":            [n.node_id for n in tree.get_locked()],
        })


@app.route("/api/trees/<tree_id>/stats", methods=["GET"])
@_json_errors("stats")
def get_stats(tree_id: str):
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    tree, lock = entry
    with lock:
        return jsonify(tree_stats(tree))


# ═══════════════════════════════════════════════════════════════════
# Routes: transfer
# ═══════════════════════════════════════════════════════════════════
@app.route("/api/trees/<tree_id>/export", methods=["GET"])
@_json_errors("export")
def export_tree(tree_id: str):
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    tree, lock = entry
    with lock:
        return jsonify(create_export_format(tree.get_tree_data(), name=tree.name))


@app.route("/api/trees/<tree_id>/import", methods=["POST"])
@_json_errors("import")
def import_into_tree(tree_id: str):
    """
    Replace or merge.

    Request JSON:  { "data": <TreeData>, "mode": "replace" | "merge",
                     "resetCompletion": false }
    Response JSON: { "imported": 12, "tree": <TreeData> }
    """
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    body = _body()
    if "data" not in body:
        raise ValidationError("missing 'data' field")
    mode = body.get("mode", "replace")
    if not isinstance(mode, str):
        raise ValidationError("'mode' must be a string")

    tree, lock = entry
    with lock:
        count = import_tree(
            tree, body["data"],
            mode=mode,
            reset=bool(body.get("resetCompletion", False)),
        )
        return jsonify({"imported": count, "tree": tree.get_tree_data()})


@app.route("/api/trees/<tree_id>/copy", methods=["POST"])
@_json_errors("copy")
def copy_from_tree(tree_id: str):
    """
    Copy a node and its descendants from another stored tree into this one.

    Request JSON:  { "sourceTreeId": "...", "nodeId": "node_...",
                     "attachTo": "node_..." (optional, default root),
                     "resetCompletion": false }
    Response JSON: { "copied": 4, "tree": <TreeData> }
    """
    entry = _get_tree(tree_id)
    if not entry:
        return _no_tree(tree_id)
    body = _body()
    source_id = body.get("sourceTreeId")
    node_id = body.get("nodeId")
    if not isinstance(source_id, str) or not isinstance(node_id, str):
        raise ValidationError("missing 'sourceTreeId' and/or 'nodeId'")
    attach_to = _optional_id(body, "attachTo")

    source_entry = _get_tree(source_id)
    if not source_entry:
        return _no_tree(source_id)

    # snapshot the source first so the two tree locks are never held together
    source, source_lock = source_entry
    with source_lock:
        source_data = source.get_tree_data()

    tree, lock = entry
    with lock:
        copied = copy_subtree(
            tree, source_data, node_id,
            attach_to=attach_to,
            reset=bool(body.get("resetCompletion", False)),
        )
        return jsonify({"copied": copied, "tree": tree.get_tree_data()})


# ═══════════════════════════════════════════════════════════════════
# Entry point
# ═══════════════════════════════════════════════════════════════════
if __name__ == "__main__":
    app.run(host=config.host, port=config.port, debug=config.debug)
