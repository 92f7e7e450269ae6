"""Optimal full matching as a minimum-cost flow problem.

Full matching partitions every unit that has at least one feasible partner
into strata made of one treated unit and one or more controls, or one
control and one or more treated units. Following Rosenbaum (1991), the
optimal full match is a minimum-weight edge cover of the bipartite graph of
feasible pairs, which is solved as a minimum-cost flow:

* ``source -> treated`` arcs and ``control -> sink`` arcs carry a lower
  bound of one unit of flow, so every unit is covered;
* ``treated -> control`` arcs have capacity one and cost equal to the pair
  distance;
* a ``sink -> source`` arc closes the circulation.

Lower bounds are expressed as node demands on a ``networkx`` graph. The
flow LP is solved with the HiGHS dual simplex from scipy, whose iteration
limit and feasibility tolerances are exposed as solver configuration. The
constraint matrix of a flow network is totally unimodular, so the basic
optimal solution is integral. Connected components of the selected arcs
are the strata.
"""

from typing import Any, Dict, List, Optional, Tuple

import networkx as nx
import numpy as np
from scipy.optimize import linprog

from cohortmatch.datatypes import Assignment
from cohortmatch.exceptions import NonconvergenceError
from cohortmatch.matching.base import AssignmentSolver, MatchingProblem, register_solver
from cohortmatch.utils.logging import get_logger

logger = get_logger(__name__)

SOURCE = "source"
SINK = "sink"


def build_flow_network(distance_matrix: np.ndarray) -> nx.DiGraph:
    """Flow network whose minimum-cost flow is the optimal full match.

    Treated row ``i`` is node ``("t", i)`` and control column ``j`` is node
    ``("c", j)``. Every row and column must have at least one finite entry.
    """
    n_treat, n_control = distance_matrix.shape
    graph = nx.DiGraph()

    # Node demands follow the networkx convention: inflow - outflow = demand
    graph.add_node(SOURCE, demand=n_treat)
    graph.add_node(SINK, demand=-n_control)
    for i in range(n_treat):
        graph.add_node(("t", i), demand=-1)
        graph.add_edge(SOURCE, ("t", i), weight=0.0)
    for j in range(n_control):
        graph.add_node(("c", j), demand=1)
        graph.add_edge(("c", j), SINK, weight=0.0)

    rows, cols = np.nonzero(np.isfinite(distance_matrix))
    for i, j in zip(rows, cols):
        graph.add_edge(("t", int(i)), ("c", int(j)), weight=float(distance_matrix[i, j]), capacity=1)

    graph.add_edge(SINK, SOURCE, weight=0.0)
    return graph


def solve_flow_network(
    graph: nx.DiGraph,
    tolerance: float = 1e-7,
    max_iter: int = 100000,
) -> Tuple[Optional[Dict[Tuple[Any, Any], float]], Any]:
    """Solve the minimum-cost flow LP of a network with node demands.

    Returns:
        Tuple of (flow per arc or None, scipy OptimizeResult)
    """
    nodes = list(graph.nodes)
    edges = list(graph.edges)

    incidence = nx.incidence_matrix(graph, nodelist=nodes, edgelist=edges, oriented=True)
    demands = np.array([graph.nodes[n].get("demand", 0) for n in nodes], dtype=float)
    costs = np.array([graph.edges[e].get("weight", 0.0) for e in edges], dtype=float)
    bounds = [(0, graph.edges[e].get("capacity")) for e in edges]

    logger.debug(f"Solving flow LP with {len(nodes)} nodes and {len(edges)} arcs")
    result = linprog(
        costs,
        A_eq=incidence.tocsc(),
        b_eq=demands,
        bounds=bounds,
        method="highs-ds",
        options={
            "maxiter": max_iter,
            "primal_feasibility_tolerance": tolerance,
            "dual_feasibility_tolerance": tolerance,
        },
    )

    if result.x is None:
        return None, result
    return dict(zip(edges, result.x)), result


def full_match(
    distance_matrix: np.ndarray,
    tolerance: float = 1e-7,
    max_iter: int = 100000,
) -> Tuple[List[List[Tuple[str, int]]], float]:
    """Optimal full matching on a treated x control distance matrix.

    Rows or columns without any finite entry are ignored.

    Returns:
        Tuple of (strata as lists of ("t", row) / ("c", col) nodes, total cost)

    Raises:
        NonconvergenceError: If the solver stops before reaching an optimum;
            ``partial_assignment`` holds the strata of a nearest-partner
            edge cover, a feasible but not optimal full match
    """
    feasible = np.isfinite(distance_matrix)
    rows = np.nonzero(feasible.any(axis=1))[0]
    cols = np.nonzero(feasible.any(axis=0))[0]
    if len(rows) == 0:
        return [], 0.0

    reduced = distance_matrix[np.ix_(rows, cols)]
    graph = build_flow_network(reduced)
    flow, result = solve_flow_network(graph, tolerance, max_iter)

    if result.status != 0:
        partial = _decode_strata(nearest_cover(reduced), rows, cols)
        raise NonconvergenceError(
            f"Optimal full matching did not converge: {result.message}",
            partial_assignment=partial,
            iterations=getattr(result, "nit", None),
            tolerance=tolerance,
        )

    logger.debug(f"Flow LP solved in {getattr(result, 'nit', '?')} iterations, "
                 f"objective {result.fun:.6f}")
    return _decode_strata(flow, rows, cols), float(result.fun)


def nearest_cover(distance_matrix: np.ndarray) -> Dict[Tuple[Any, Any], float]:
    """Feasible full match from each unit's nearest partner.

    Every row is joined to its nearest column and every column to its
    nearest row. Arcs whose two endpoints are both covered elsewhere are then
    dropped, longest first, which leaves a minimal edge cover, i.e. a set of
    stars. Every row and column must have at least one finite entry.

    Returns:
        Flow per ``(("t", i), ("c", j))`` arc, in the format of
        :func:`solve_flow_network`
    """
    arcs = {(int(i), int(np.argmin(distance_matrix[i]))) for i in range(distance_matrix.shape[0])}
    arcs |= {(int(np.argmin(distance_matrix[:, j])), int(j)) for j in range(distance_matrix.shape[1])}

    degree: Dict[Tuple[str, int], int] = {}
    for i, j in arcs:
        degree[("t", i)] = degree.get(("t", i), 0) + 1
        degree[("c", j)] = degree.get(("c", j), 0) + 1

    for i, j in sorted(arcs, key=lambda arc: (-distance_matrix[arc], arc)):
        if degree[("t", i)] > 1 and degree[("c", j)] > 1:
            arcs.discard((i, j))
            degree[("t", i)] -= 1
            degree[("c", j)] -= 1

    return {(("t", i), ("c", j)): 1.0 for i, j in arcs}


def _decode_strata(
    flow: Dict[Tuple[Any, Any], float],
    rows: np.ndarray,
    cols: np.ndarray,
) -> List[List[Tuple[str, int]]]:
    """Connected components of the selected treated -> control arcs."""
    selected = nx.Graph()
    for (u, v), value in flow.items():
        if value > 0.5 and isinstance(u, tuple) and isinstance(v, tuple) and u[0] == "t":
            selected.add_edge(("t", int(rows[u[1]])), ("c", int(cols[v[1]])))

    components = [sorted(component) for component in nx.connected_components(selected)]
    # Deterministic stratum numbering: by smallest treated row, then control column
    components.sort(key=lambda nodes: (min(i for kind, i in nodes if kind == "t"),
                                       min(j for kind, j in nodes if kind == "c")))
    return components


@register_solver("optimal_full")
class OptimalFullSolver(AssignmentSolver):
    """Optimal full matching with a tolerance and iteration budget."""

    def _solve(self, problem: MatchingProblem) -> Assignment:
        if problem.distances is None:
            raise ValueError("Optimal full matching requires a distance matrix")
        distances = problem.distances
        treated_ids = distances.treated_ids
        control_ids = distances.control_ids

        feasible = np.isfinite(distances.values)
        unmatched = ([uid for i, uid in enumerate(treated_ids) if not feasible[i].any()]
                     + [uid for j, uid in enumerate(control_ids) if not feasible[:, j].any()])

        try:
            components, total = full_match(distances.values, problem.tolerance, problem.max_iter)
        except NonconvergenceError as e:
            if e.partial_assignment is not None:
                e.partial_assignment = self._to_assignment(
                    problem, e.partial_assignment, unmatched
                ).drop_invalid_strata()
            raise

        logger.info(f"Optimal full matching total distance: {total:.4f}")
        return self._to_assignment(problem, components, unmatched)

    def _to_assignment(
        self,
        problem: MatchingProblem,
        components: List[List[Tuple[str, int]]],
        unmatched: List[Any],
    ) -> Assignment:
        treated_ids = problem.distances.treated_ids
        control_ids = problem.distances.control_ids
        strata = {
            stratum_id: [treated_ids[i] if kind == "t" else control_ids[i] for kind, i in nodes]
            for stratum_id, nodes in enumerate(components)
        }
        return Assignment.from_strata(
            self.name, problem.treated_ids, problem.control_ids, strata, unmatched=unmatched
        )
