import numpy as np

from skill_tree import SkillTree

"""
Skill-tree statistics  (vectorised)
-----------------------------------
Per-depth weight / completion breakdown for progress dashboards.

Node attributes are gathered once into flat NumPy arrays (insertion order),
then every aggregate is a single np.bincount over the depth vector, with no
per-depth Python loops.
"""


def depth_vector(tree: SkillTree) -> np.ndarray:
    """(N,) int array: distance from the root for each node, in insertion order."""
    index = {nid: i for i, nid in enumerate(tree.nodes)}
    depth = np.zeros(len(index), dtype=np.int64)
    # BFS order from the root guarantees a parent's depth is set before its children
    for nid in tree.walk_order():
        parent = tree.nodes[nid].parent_id
        if parent is not None:
            depth[index[nid]] = depth[index[parent]] + 1
    return depth


def _node_arrays(tree: SkillTree) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    nodes = list(tree.nodes.values())
    weights = np.fromiter((n.weight for n in nodes), dtype=np.int64, count=len(nodes))
    completed = np.fromiter((n.completed for n in nodes), dtype=bool, count=len(nodes))
    headers = np.fromiter((n.is_header for n in nodes), dtype=bool, count=len(nodes))
    return weights, completed, headers


def tree_stats(tree: SkillTree) -> dict:
    """Structure + progress summary for a tree."""
    n = tree.num_nodes
    stats: dict = {
        "numNodes": n,
        "numEdges": len(tree.edges),
    }
    if n == 0:
        stats.update({
            "maxDepth": 0,
            "avgBranching": 0.0,
            "leafCount": 0,
            "headerCount": 0,
            "weightByDepth": [],
            "completedWeightByDepth": [],
            "completionByDepth": [],
            "overallCompletion": 0.0,
            "progressPercent": 0,
        })
        return stats

    depth = depth_vector(tree)
    weights, completed, headers = _node_arrays(tree)
    n_children = np.fromiter(
        (len(tree.get_children(nid)) for nid in tree.nodes), dtype=np.int64, count=n,
    )

    levels = int(depth.max()) + 1
    weight_by_depth = np.bincount(depth, weights=weights, minlength=levels)
    done_by_depth = np.bincount(depth, weights=weights * completed, minlength=levels)
    completion_by_depth = np.divide(
        done_by_depth, weight_by_depth,
        out=np.zeros(levels, dtype=np.float64), where=weight_by_depth > 0,
    )

    internal = n_children > 0
    root = tree.nodes[tree.root_id] if tree.root_id is not None else None

    stats.update({
        "maxDepth": levels - 1,
        "avgBranching": round(float(n_children[internal].mean()), 2) if internal.any() else 0.0,
        "leafCount": int((~internal).sum()),
        "headerCount": int(headers.sum()),
        "weightByDepth": weight_by_depth.astype(np.int64).tolist(),
        "completedWeightByDepth": done_by_depth.astype(np.int64).tolist(),
        "completionByDepth": [round(float(c), 4) for c in completion_by_depth],
        "overallCompletion": round(root.subtree_completion, 4) if root is not None else 0.0,
        "progressPercent": tree.calculate_progress(),
    })
    return stats
