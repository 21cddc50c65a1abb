import logging
import warnings

import numpy as np
from scipy.sparse.linalg import aslinearoperator


def _is_close(a, b, atol=1e-5):
    if np.fabs(a - b) < atol:
        return True
    return False


def sort_by_shift_distance(lam, sigma, rtol=1e-10):
    """
    Return the indices that sort lam by |lam - sigma|, smaller lam first when
    two values are equally distant from the shift
    """
    lam = np.asarray(lam)
    dist = np.abs(lam - sigma)
    order = np.argsort(dist, kind="stable")
    d = dist[order]

    # Neighbouring distances that agree to rtol form a run ordered by lam
    indices = []
    start = 0
    with np.errstate(invalid="ignore"):
        for k in range(1, len(order) + 1):
            if (
                k < len(order)
                and np.isfinite(d[k])
                and np.abs(d[k] - d[k - 1]) <= rtol * max(d[k], d[k - 1])
            ):
                continue
            run = order[start:k]
            indices.extend(run[np.argsort(lam[run], kind="stable")])
            start = k

    return np.array(indices, dtype=int)


class BasicLanczos:
    """
    Shift and invert Lanczos method with full re-orthogonalization.

    The operator is y = (A - sigma * B)^{-1} @ B @ x, with eigenvalues
    mu = 1 / (lam - sigma). The basis is orthonormal in the inner product
    defined by W, which must be symmetric positive definite and make the
    operator self-adjoint. For a natural frequency problem W = B = M, for a
    linearized buckling problem with an indefinite B = G, W = A = K.

    Parameters
    ----------
    N : int
        Number of eigenvalues and eigenvectors to compute.
    m : int
        Maximum size of the Lanczos subspace.
    tol : real
        Relative residual tolerance for the eigenpairs.
    eig_atol : real
        Absolute tolerance for checking if two eigenvalues are numerically repeated.
    seed : int
        Seed of the random starting vector.
    """

    def __init__(self, N=10, m=60, tol=1e-10, eig_atol=1e-5, seed=12345):
        if not isinstance(N, (int, np.integer)) or N < 1:
            raise ValueError(f"N must be a positive integer, got {N!r}")
        if not isinstance(m, (int, np.integer)) or m < 1:
            raise ValueError(f"m must be a positive integer, got {m!r}")
        if m < N:
            raise ValueError(f"Subspace size m = {m} is smaller than N = {N}")
        if tol <= 0.0:
            raise ValueError(f"tol must be positive, got {tol}")

        self.N = N
        self.m_max = m
        self.tol = tol
        self.eig_atol = eig_atol
        self.seed = seed

        self.m = 0
        self.fail = True
        self.residual_history = []

        return

    def _solve_reduced_problem(self, alpha, beta, sigma, m):
        """Solve the reduced eigenvalue subproblem"""

        T = np.diag(alpha[:m])
        if m > 1:
            T += np.diag(beta[: m - 1], 1) + np.diag(beta[: m - 1], -1)

        theta, Y = np.linalg.eigh(T)

        # Invert the shift, theta = 0 is an eigenvalue at infinity
        with np.errstate(divide="ignore"):
            lam = sigma + 1.0 / theta

        indices = sort_by_shift_distance(lam, sigma)

        return theta, Y, T, lam, indices

    def _ritz_estimates(self, theta, Y, m, indices, N):
        """Residual estimates of the first N sorted Ritz pairs"""
        idx = indices[:N]
        with np.errstate(divide="ignore", invalid="ignore"):
            est = np.abs(self.beta[m - 1] * Y[m - 1, idx]) / np.abs(theta[idx])
        est[~np.isfinite(est)] = np.inf
        return est

    def _ritz_pairs(self, m, theta, Y, lam, indices, N):
        idx = indices[:N]
        Phi = self.V[:, :m] @ Y[:, idx]

        # Normalize so that phi^T W phi = 1
        for k in range(Phi.shape[1]):
            nrm = self.norm(Phi[:, k])
            if nrm > 0.0:
                Phi[:, k] /= nrm

        return lam[idx], Phi

    def _residuals(self, lam, Phi):
        """True relative residuals ||A phi - lam B phi|| / ||A phi||"""
        res = np.zeros(len(lam))
        for k in range(len(lam)):
            if not np.isfinite(lam[k]):
                res[k] = np.inf
                continue

            Aphi = self.A @ Phi[:, k]
            r = Aphi - lam[k] * (self.B @ Phi[:, k])
            nA = np.linalg.norm(Aphi)
            res[k] = np.linalg.norm(r) / nA if nA > 0.0 else np.inf

        return res

    def solve(self, A, B, oper, sigma, W=None, callback=None):
        """
        Solve the generalized eigenvalue problem A @ phi = lam * B @ phi

        Parameters
        ----------
        A : ndarray, sparse matrix or LinearOperator
            The n by n symmetric matrix A.
        B : ndarray, sparse matrix or LinearOperator
            The n by n symmetric matrix B.
        oper : LinearOperator
            Computes the action (A - sigma * B)^{-1} @ B @ x.
        sigma : real
            The scalar shift value used for the factored matrix.
        W : ndarray, sparse matrix or LinearOperator
            Inner product matrix. The Euclidean inner product is used when None.
        callback : callable
            Called as callback(i, estimates) after every Lanczos step.

        Returns
        -------
        lam : ndarray
            The eigenvalues, sorted by their distance to sigma
        Phi : ndarray
            The W-normalized eigenvectors
        """

        n = A.shape[1]
        if A.shape != (n, n):
            raise ValueError(f"A must have dimensions ({n},{n})")
        if B.shape != (n, n):
            raise ValueError(f"B must have dimensions ({n},{n})")
        if oper.shape != (n, n):
            raise ValueError(f"Shift-invert operator must have dimensions ({n},{n})")

        self.A = aslinearoperator(A)
        self.B = aslinearoperator(B)
        self.oper = oper
        self.sigma = sigma

        if W is None:
            self.inner_product = lambda x, y: y.dot(x)
        else:
            if W.shape != (n, n):
                raise ValueError(f"W must have dimensions ({n},{n})")
            W = aslinearoperator(W)
            self.inner_product = lambda x, y: y.dot(W @ x)

        self.norm = lambda x: np.sqrt(max(self.inner_product(x, x), 0.0))

        # The Krylov space cannot exceed the problem dimension
        m_max = min(self.m_max, n)
        N = min(self.N, m_max)

        # Lanczos coefficients
        self.alpha = np.zeros(m_max)
        self.beta = np.zeros(m_max)

        # Lanczos subspace
        self.V = np.zeros((n, m_max + 1))

        # Generate an initial random vector
        rng = np.random.default_rng(self.seed)
        self.V[:, 0] = rng.uniform(size=n, low=-1.0, high=1.0)

        b0 = self.norm(self.V[:, 0])
        if b0 == 0.0:
            raise ValueError("Starting vector has zero norm in the W inner product")
        self.V[:, 0] = self.V[:, 0] / b0

        eps = np.finfo(float).eps
        self.residual_history = []
        self.invariant = False
        self.m = m_max

        for i in range(1, m_max + 1):
            # Compute w = (A - sigma * B)^{-1} @ B @ V[:, i - 1]
            w = self.oper(self.V[:, i - 1])
            w = np.asarray(w, dtype=float).ravel()
            if i > 1:
                w -= self.beta[i - 2] * self.V[:, i - 2]

            # Perform full orthogonalization using modified Gram Schmidt
            nrm0 = self.norm(w)
            for j in range(i - 1, -1, -1):
                h = self.inner_product(self.V[:, j], w)
                w -= h * self.V[:, j]

                if j == i - 1:
                    self.alpha[i - 1] = h

            # Second pass when cancellation occurred
            nrm = self.norm(w)
            if nrm < 0.717 * nrm0:
                for j in range(i - 1, -1, -1):
                    h = self.inner_product(self.V[:, j], w)
                    w -= h * self.V[:, j]

                    if j == i - 1:
                        self.alpha[i - 1] += h
                nrm = self.norm(w)

            self.beta[i - 1] = nrm

            # Check for an invariant subspace
            tnorm = np.max(np.abs(self.alpha[:i]))
            if i > 1:
                tnorm = max(tnorm, np.max(np.abs(self.beta[: i - 1])))
            if nrm <= 100.0 * eps * tnorm:
                self.beta[i - 1] = 0.0
                self.invariant = True
                self.m = i
                logging.info("Lanczos: invariant subspace found at step %d" % i)
                break

            self.V[:, i] = w / nrm

            theta, Y, T, lam, indices = self._solve_reduced_problem(
                self.alpha, self.beta, self.sigma, i
            )
            est = self._ritz_estimates(theta, Y, i, indices, min(N, i))
            self.residual_history.append(est)

            if callback is not None:
                callback(i, est)

            if i >= N and np.all(est <= self.tol):
                lam0, Phi = self._ritz_pairs(i, theta, Y, lam, indices, N)
                if np.all(self._residuals(lam0, Phi) <= self.tol):
                    self.m = i
                    break

        # Solve the reduced eigenvalue problem
        self.theta, self.Y, self.T, self.lam, self.indices = self._solve_reduced_problem(
            self.alpha, self.beta, self.sigma, self.m
        )

        if self.invariant:
            est = self._ritz_estimates(
                self.theta, self.Y, self.m, self.indices, min(N, self.m)
            )
            self.residual_history.append(est)
            if callback is not None:
                callback(self.m, est)

        N = min(N, self.m)
        self.lam0, self.Phi = self._ritz_pairs(
            self.m, self.theta, self.Y, self.lam, self.indices, N
        )
        self.eig_res = self._residuals(self.lam0, self.Phi)
        self.converged = self.eig_res <= self.tol
        self.fail = N < self.N or not np.all(self.converged)

        # Warn when the cut between the N-th and N+1-th eigenvalues splits a cluster
        if self.m > N and _is_close(
            self.lam[self.indices[N - 1]],
            self.lam[self.indices[N]],
            atol=self.eig_atol,
        ):
            warnings.warn(
                "Eigenvalues %d and %d are numerically repeated: %.10e, %.10e"
                % (
                    N - 1,
                    N,
                    self.lam[self.indices[N - 1]],
                    self.lam[self.indices[N]],
                ),
                RuntimeWarning,
            )

        return self.lam0, self.Phi
