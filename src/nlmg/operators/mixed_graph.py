"""Mixed graph-Laplacian operator on a vertex/edge graph.

Discretizes -div(k0 k(p) grad p) = f in mixed form on a graph whose vertices
are the elements (one potential dof each) and whose edges carry the flux:

    [ M(1/k)  B^T ] [sigma]   [g]
    [ B       0   ] [  p  ] = [f]

``B`` is the signed edge/vertex incidence transposed. An edge with a single
vertex is a boundary edge (natural p = 0 condition). Each vertex owns a
diagonal element mass matrix over its incident edges with entries
``c_e / w_e`` (``c_e`` = 1/2 for interior edges, 1 for boundary edges), so the
global flux mass matrix is ``sum_i M_i / k_i``.
"""

import logging
from typing import Callable, List, Optional, Sequence

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import gmres, spsolve

from .base import LinearLevelOperator

log = logging.getLogger(__name__)


class MixedGraphOperator(LinearLevelOperator):
    """Mixed finite-volume operator on a graph, solved with scipy.sparse.

    Parameters
    ----------
    incidence : sparse matrix
        Signed edge/vertex incidence, shape (n_edges, n_vertices). Interior
        edges have one +1 and one -1 entry, boundary edges a single entry.
    edge_weight : np.ndarray, optional
        Edge conductance w_e (k0 * area / distance), default ones
    ess_flux_dofs : sequence of int, optional
        Edges with prescribed flux (essential dofs)
    linear_solver : str
        "direct" (spsolve) or "gmres"
    max_iterations : int
        GMRES iteration cap
    """

    def __init__(
        self,
        incidence: sparse.spmatrix,
        edge_weight: Optional[np.ndarray] = None,
        ess_flux_dofs: Optional[Sequence[int]] = None,
        linear_solver: str = "direct",
        max_iterations: int = 1000,
    ):
        if linear_solver not in ("direct", "gmres"):
            raise ValueError(f"Unknown linear solver '{linear_solver}'")

        incidence = sparse.csr_matrix(incidence, dtype=float)
        n_edges, n_vertices = incidence.shape
        if edge_weight is None:
            edge_weight = np.ones(n_edges)
        edge_weight = np.asarray(edge_weight, dtype=float)
        if edge_weight.shape != (n_edges,) or np.any(edge_weight <= 0.0):
            raise ValueError("edge_weight must be positive with one entry per edge")

        self.linear_solver = linear_solver
        self.max_iterations = max_iterations
        self.linear_tol = 1e-8

        self._offsets = np.array([0, n_edges, n_edges + n_vertices])
        self._B = incidence.T.tocsr()
        self._BT = incidence

        # Element (vertex) data
        pattern = abs(incidence).tocsc()
        edges_per_vertex = np.diff(pattern.indptr)
        vertices_per_edge = np.diff(abs(incidence).tocsr().indptr)
        share = np.where(vertices_per_edge == 2, 0.5, 1.0) / edge_weight

        self._elem_flux_dofs = []
        self._elem_mass = []
        for i in range(n_vertices):
            edofs = np.sort(pattern.indices[pattern.indptr[i] : pattern.indptr[i + 1]])
            self._elem_flux_dofs.append(edofs)
            self._elem_mass.append(np.diag(share[edofs]))
        self._elem_pot_dofs = [np.array([i]) for i in range(n_vertices)]
        if np.any(edges_per_vertex == 0):
            log.warning("MixedGraphOperator: graph has isolated vertices")

        # mass diagonal = mass_assembly @ (1 / k)
        self._mass_assembly = sparse.csr_matrix(
            pattern.multiply(share[:, None]), dtype=float
        )
        self._pwc = sparse.identity(n_vertices, format="csr")

        self._ess = np.zeros(self.size, dtype=bool)
        if ess_flux_dofs is not None:
            self._ess[np.asarray(ess_flux_dofs, dtype=int)] = True
        self._keep = sparse.diags((~self._ess).astype(float))
        self._ess_identity = sparse.diags(self._ess.astype(float))

        self._base = np.ones(n_vertices)
        self._coefficient = np.ones(n_vertices)
        self._system = None

        log.debug(
            f"MixedGraphOperator: {n_edges} edges, {n_vertices} vertices, "
            f"{int(self._ess.sum())} essential dofs, solver={linear_solver}"
        )

    @classmethod
    def chain(cls, num_vertices: int, k0: float = 1.0, **kwargs):
        """Uniform 1-D chain on [0, 1] with p = 0 at both ends.

        Vertex i is the cell centre of cell i (width h = 1 / num_vertices);
        edge j sits at x = j h, edges 0 and num_vertices are boundary edges.
        """
        n = num_vertices
        h = 1.0 / n
        rows, cols, vals = [0], [0], [-1.0]
        for j in range(1, n):
            rows += [j, j]
            cols += [j - 1, j]
            vals += [1.0, -1.0]
        rows.append(n)
        cols.append(n - 1)
        vals.append(1.0)
        incidence = sparse.csr_matrix((vals, (rows, cols)), shape=(n + 1, n))
        weight = np.full(n + 1, k0 / h)
        weight[[0, n]] = 2.0 * k0 / h
        return cls(incidence, weight, **kwargs)

    # =========================================================================
    # Layout
    # =========================================================================

    @property
    def offsets(self) -> np.ndarray:
        return self._offsets

    @property
    def num_elements(self) -> int:
        return len(self._elem_pot_dofs)

    def essential_dofs(self) -> np.ndarray:
        return self._ess

    def pw_const_matrix(self) -> sparse.csr_matrix:
        return self._pwc

    def element_mass_matrices(self) -> List[np.ndarray]:
        return self._elem_mass

    def element_flux_dofs(self) -> List[np.ndarray]:
        return self._elem_flux_dofs

    def element_potential_dofs(self) -> List[np.ndarray]:
        return self._elem_pot_dofs

    # =========================================================================
    # Assembly
    # =========================================================================

    def _mass_diagonal(self, coeff: np.ndarray) -> np.ndarray:
        return self._mass_assembly @ (1.0 / (coeff * self._base))

    def _assemble(self, coeff: np.ndarray, coupling=None) -> sparse.csr_matrix:
        upper = self._BT if coupling is None else self._BT + coupling
        K = sparse.bmat(
            [[sparse.diags(self._mass_diagonal(coeff)), upper], [self._B, None]],
            format="csr",
        )
        return (self._keep @ K + self._ess_identity).tocsr()

    def _coupling(self, blocks: List[np.ndarray]) -> sparse.csr_matrix:
        rows, cols, vals = [], [], []
        for block, edofs, vdofs in zip(
            blocks, self._elem_flux_dofs, self._elem_pot_dofs
        ):
            r, c = np.meshgrid(edofs, vdofs, indexing="ij")
            rows.append(r.ravel())
            cols.append(c.ravel())
            vals.append(np.asarray(block).ravel())
        n_edges, n_vertices = self._BT.shape
        return sparse.csr_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(n_edges, n_vertices),
        )

    # =========================================================================
    # LinearLevelOperator interface
    # =========================================================================

    def apply(self, coeff: np.ndarray, x: np.ndarray) -> np.ndarray:
        n_flux = self._offsets[1]
        sigma, p = x[:n_flux], x[n_flux:]
        y = np.empty_like(x, dtype=float)
        y[:n_flux] = self._mass_diagonal(coeff) * sigma + self._BT @ p
        y[n_flux:] = self._B @ sigma
        y[self._ess] = x[self._ess]
        return y

    def rescale_coefficient(
        self,
        coeff: Optional[np.ndarray] = None,
        potential: Optional[np.ndarray] = None,
        fn: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    ) -> None:
        if fn is not None:
            if potential is None:
                raise ValueError("rescale_coefficient with fn requires a potential")
            self._base = np.asarray(fn(self.pw_const_project(potential)), dtype=float)
            self._coefficient = np.ones(self.num_elements)
        elif coeff is not None:
            self._coefficient = np.asarray(coeff, dtype=float).copy()
        else:
            raise ValueError("rescale_coefficient requires coeff or (potential, fn)")
        self._system = self._assemble(self._coefficient)

    def update_jacobian(self, coeff: np.ndarray, blocks: List[np.ndarray]) -> None:
        self._coefficient = np.asarray(coeff, dtype=float).copy()
        self._system = self._assemble(self._coefficient, self._coupling(blocks))

    def set_linear_tol(self, rtol: float) -> None:
        self.linear_tol = rtol

    def solve(self, rhs: np.ndarray, x: Optional[np.ndarray] = None) -> np.ndarray:
        if self._system is None:
            self._system = self._assemble(self._coefficient)

        if self.linear_solver == "direct":
            return np.asarray(spsolve(self._system.tocsc(), rhs))

        sol, info = gmres(
            self._system,
            rhs,
            x0=None if x is None else x.copy(),
            rtol=self.linear_tol,
            atol=0.0,
            maxiter=self.max_iterations,
        )
        if info != 0:
            if info > 0:
                # Did not converge but we can still use the result
                log.debug(f"GMRES did not reach rtol={self.linear_tol} ({info} iters)")
            else:
                raise RuntimeError(f"GMRES failed (info={info})")
        return sol
