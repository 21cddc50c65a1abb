"""
Small models implementing the assembler interface used by the analyses.
"""

import numpy as np
import pytest
from scipy import sparse


class MatrixModel:
    """Fixed K, M and G matrices with no design variables"""

    num_design_vars = 0

    def __init__(self, K, M=None, G=None):
        self.K = K
        self.M = M
        self.G = G

    def assemble_matrix(self, kind, path=None):
        if kind == "stiffness":
            return self.K
        elif kind == "mass":
            return self.M
        elif kind == "geometric":
            return self.G
        raise ValueError(kind)

    def get_equilibrium_path(self, load_case=0):
        return np.zeros(self.K.shape[0])

    def get_design_vars(self):
        return np.zeros(0)

    def set_design_vars(self, x):
        pass


class SpringChainModel:
    """
    A chain of n masses connected by n + 1 springs with fixed ends. The
    design variables are the spring stiffnesses, and each mass grows with
    the stiffness of its two springs.

    Only per-variable derivative matrices are provided.
    """

    def __init__(self, n=10, storage="sparse", x=None):
        self.n = n
        self.storage = storage
        if x is None:
            x = 1.0 + 0.1 * np.arange(n + 1)
        self.x = np.array(x, dtype=float)

        # Tridiagonal pattern shared by all matrices
        rows, cols = [], []
        for i in range(n):
            for j in range(max(0, i - 1), min(n, i + 2)):
                rows.append(i)
                cols.append(j)
        self.rows = np.array(rows)
        self.cols = np.array(cols)

    @property
    def num_design_vars(self):
        return self.n + 1

    def get_design_vars(self):
        return self.x.copy()

    def set_design_vars(self, x):
        self.x[:] = x

    def _matrix(self, dense):
        if self.storage == "dense":
            return dense
        data = dense[self.rows, self.cols]
        return sparse.csr_matrix((data, (self.rows, self.cols)), shape=dense.shape)

    def stiffness(self, x):
        n = self.n
        K = np.zeros((n, n))
        for k in range(n + 1):
            self._add_spring(K, k, x[k])
        return K

    def mass(self, x):
        n = self.n
        return np.diag(1.0 + 0.25 * (x[:n] + x[1:]))

    def _add_spring(self, K, k, val):
        n = self.n
        if k - 1 >= 0:
            K[k - 1, k - 1] += val
        if k < n:
            K[k, k] += val
        if k - 1 >= 0 and k < n:
            K[k - 1, k] -= val
            K[k, k - 1] -= val

    def assemble_matrix(self, kind, path=None):
        if kind == "stiffness":
            return self._matrix(self.stiffness(self.x))
        elif kind == "mass":
            return self._matrix(self.mass(self.x))
        raise ValueError(kind)

    def eval_matrix_dv_deriv(self, kind, k, path=None):
        n = self.n
        dA = np.zeros((n, n))
        if kind == "stiffness":
            self._add_spring(dA, k, 1.0)
        elif kind == "mass":
            if k - 1 >= 0:
                dA[k - 1, k - 1] = 0.25
            if k < n:
                dA[k, k] = 0.25
        else:
            raise ValueError(kind)
        return self._matrix(dA)


class VectorizedSpringChainModel(SpringChainModel):
    """The spring chain with all design derivatives evaluated at once"""

    def eval_matrix_dv_sens(self, kind, psi, phi, path=None):
        n = self.n
        dfdx = np.zeros(n + 1)
        if kind == "stiffness":
            # Spring k stretches by phi[k] - phi[k - 1]
            dpsi = np.zeros(n + 1)
            dphi = np.zeros(n + 1)
            dpsi[:n] += psi
            dpsi[1:] -= psi
            dphi[:n] += phi
            dphi[1:] -= phi
            dfdx[:] = dpsi * dphi
        elif kind == "mass":
            pp = psi * phi
            dfdx[:n] += 0.25 * pp
            dfdx[1:] += 0.25 * pp
        else:
            raise ValueError(kind)
        return dfdx


class SyntheticBucklingModel:
    """
    Buckling model with K(x) from a spring chain, an equilibrium path
    u = K(x)^{-1} f and a geometric stiffness that depends on both the path
    and the design

        G(u, x) = sum_i u_i G_i + sum_k x_k H_k
    """

    def __init__(self, n=6, seed=7):
        self.chain = SpringChainModel(n=n, storage="dense")
        self.n = n

        rng = np.random.default_rng(seed)
        self.f = rng.uniform(-1.0, 1.0, size=n)

        self.Gi = []
        for i in range(n):
            A = rng.standard_normal((n, n))
            self.Gi.append(0.5 * (A + A.T))

        self.Hk = []
        for k in range(n + 1):
            A = 0.1 * rng.standard_normal((n, n))
            self.Hk.append(0.5 * (A + A.T))

        self.npath = 0

    @property
    def num_design_vars(self):
        return self.chain.num_design_vars

    def get_design_vars(self):
        return self.chain.get_design_vars()

    def set_design_vars(self, x):
        self.chain.set_design_vars(x)

    def stiffness(self):
        return self.chain.stiffness(self.chain.x)

    def geometric(self, u, x):
        G = np.zeros((self.n, self.n))
        for i in range(self.n):
            G += u[i] * self.Gi[i]
        for k in range(len(x)):
            G += x[k] * self.Hk[k]
        return G

    def get_equilibrium_path(self, load_case=0):
        self.npath += 1
        return np.linalg.solve(self.stiffness(), self.f)

    def assemble_matrix(self, kind, path=None):
        if kind == "stiffness":
            return self.stiffness()
        elif kind == "geometric":
            return self.geometric(path, self.chain.x)
        raise ValueError(kind)

    def eval_matrix_dv_sens(self, kind, psi, phi, path=None):
        ndv = self.num_design_vars
        if kind == "stiffness":
            return np.array(
                [psi @ self.chain.eval_matrix_dv_deriv("stiffness", k) @ phi for k in range(ndv)]
            )
        elif kind == "geometric":
            return np.array([psi @ self.Hk[k] @ phi for k in range(ndv)])
        raise ValueError(kind)

    def eval_matrix_path_sens(self, kind, psi, phi, path):
        return np.array([psi @ self.Gi[i] @ phi for i in range(self.n)])

    def solve_tangent_adjoint(self, rhs, load_case=0):
        return np.linalg.solve(self.stiffness().T, rhs)

    def eval_residual_dv_sens(self, adj, path, load_case=0):
        return self.eval_matrix_dv_sens("stiffness", adj, path)


@pytest.fixture
def chain_model():
    return SpringChainModel(n=30)


@pytest.fixture
def buckling_model():
    return SyntheticBucklingModel(n=6)
