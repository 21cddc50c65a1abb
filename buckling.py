import logging
import time

from icecream import ic
import matplotlib.pyplot as plt
import numpy as np
from scipy import sparse
from scipy.sparse.linalg import LinearOperator, eigsh

from analysis_utils import timeit
from eigen_sensitivity import eval_eigenvalue_dv_sens
from lanczos import BasicLanczos, sort_by_shift_distance
from shift_invert import (
    ConfigurationError,
    EigenAnalysisError,
    ExtractionError,
    FactorizationError,
    ShiftInvertOperator,
    StaleEigenpairError,
    as_matrix,
)


class EigenAnalysis:
    """
    Shift and invert eigenvalue analysis of K(x) u = lam B(x) u for a
    finite-element model.

    The analysis owns the shifted matrix K - sigma * B, its factorization and
    the Lanczos solver. The model provides the matrices, the equilibrium path
    and the derivatives needed for the design sensitivities.

    Parameters
    ----------
    model : object
        The finite-element assembler.
    load_case : int
        Load case used to compute the equilibrium path.
    sigma : float
        The real shift. Eigenvalues closest to sigma are computed. Complex
        or non-finite shifts raise ValueError, the pencils are real symmetric.
    max_lanczos_vecs : int
        Maximum size of the Lanczos subspace.
    num_eigvals : int
        Number of eigenvalues and eigenvectors to compute.
    eig_tol : float
        Relative residual tolerance for the eigenpairs.
    solver : object
        Linear solver providing factor(mat) and solve(rhs). Picked from the
        storage of the assembled matrices when None.
    eig_atol : float
        Absolute tolerance used to detect numerically repeated eigenvalues.
    seed : int
        Seed of the random Lanczos starting vector.
    """

    kind_a = "stiffness"
    kind_b = None
    b_name = "B"
    path_dependent = False

    def __init__(
        self,
        model,
        load_case=0,
        sigma=0.0,
        max_lanczos_vecs=60,
        num_eigvals=5,
        eig_tol=1e-8,
        solver=None,
        eig_atol=1e-5,
        seed=12345,
    ):
        if not isinstance(num_eigvals, (int, np.integer)) or num_eigvals < 1:
            raise ValueError(f"num_eigvals must be a positive integer, got {num_eigvals!r}")
        if not isinstance(max_lanczos_vecs, (int, np.integer)) or max_lanczos_vecs < 1:
            raise ValueError(
                f"max_lanczos_vecs must be a positive integer, got {max_lanczos_vecs!r}"
            )
        if max_lanczos_vecs < num_eigvals:
            raise ValueError(
                f"max_lanczos_vecs = {max_lanczos_vecs} is smaller than "
                f"num_eigvals = {num_eigvals}"
            )
        if not eig_tol > 0.0:
            raise ValueError(f"eig_tol must be positive, got {eig_tol}")

        self.model = model
        self.load_case = load_case
        self.sigma = self._check_sigma(sigma)
        self.num_eigvals = num_eigvals
        self.max_lanczos_vecs = max_lanczos_vecs
        self.eig_tol = eig_tol
        self.solver = solver

        self.eig_solver = BasicLanczos(
            N=num_eigvals, m=max_lanczos_vecs, tol=eig_tol, eig_atol=eig_atol, seed=seed
        )

        self.path = None
        self.kmat = None
        self.bmat = None
        self.oper = None
        self.assembled = False

        self.state = "constructed"
        self._clear_eigenpairs()
        self._init_profile()

        return

    @staticmethod
    def _check_sigma(sigma):
        if np.iscomplexobj(sigma):
            raise ValueError(f"Only real shifts are supported, got {sigma}")
        sigma = float(sigma)
        if not np.isfinite(sigma):
            raise ValueError(f"Shift must be finite, got {sigma}")
        return sigma

    def _init_profile(self):
        self.profile = {}
        self.profile["matrix assembly time"] = 0.0
        self.profile["eigenvalue solve time"] = 0.0
        self.profile["sensitivity time"] = 0.0
        self.profile["factor count"] = 0
        self.profile["solve preconditioner count"] = 0
        self.profile["N"] = self.num_eigvals
        self.profile["m"] = self.max_lanczos_vecs
        self.profile["eig_tol"] = self.eig_tol
        return

    def _clear_eigenpairs(self):
        self.lam = np.zeros(0)
        self.err = np.zeros(0)
        self.Q = None
        self.num_converged = 0
        self.converged = False
        return

    def get_sigma(self):
        return self.sigma

    def set_sigma(self, sigma):
        """
        Set a new shift. The path and the matrices are kept, the factorization
        and the eigenpairs are recomputed by the next call to solve()
        """
        sigma = self._check_sigma(sigma)
        if sigma == self.sigma:
            return

        self.sigma = sigma
        if self.oper is not None:
            self.oper.set_sigma(sigma)

        if self.state in ("factored", "converged", "failed"):
            self._clear_eigenpairs()
            if self.path_dependent and self.path is not None:
                self.state = "path_solved"
            else:
                self.state = "constructed"

        return

    def set_design_vars(self, x):
        """
        Update the model design. The path and the eigenpairs are discarded,
        the matrices are reassembled in place by the next call to solve()
        """
        self.model.set_design_vars(x)

        self.path = None
        self.assembled = False

        self._clear_eigenpairs()
        self.state = "constructed"

        return

    def _assemble_b(self):
        raise NotImplementedError

    def _inner_product_matrix(self):
        raise NotImplementedError

    def _assemble(self):
        K = self.model.assemble_matrix(self.kind_a)
        B = self._assemble_b()

        if self.oper is None:
            self.kmat = as_matrix(K, name="K")
            self.bmat = as_matrix(B, name=self.b_name)
            self.oper = ShiftInvertOperator(
                self.kmat, self.bmat, solver=self.solver, sigma=self.sigma
            )
        else:
            # Same pattern, new values. The auxiliary matrix is reused.
            self.kmat.set_values(K)
            self.bmat.set_values(B)
            self.oper.invalidate()

        self.assembled = True

        return

    def solve(self, callback=None):
        """
        Compute the eigenvalues closest to sigma

        Parameters
        ----------
        callback : callable
            Called as callback(i, estimates) after every Lanczos step.

        Returns
        -------
        int
            The number of converged eigenpairs.
        """
        t0 = time.time()

        self._clear_eigenpairs()

        if self.path_dependent and self.path is None:
            self.path = self.model.get_equilibrium_path(self.load_case)
            self.state = "path_solved"

        if not self.assembled:
            self._assemble()

        t1 = time.time()
        self.profile["matrix assembly time"] += t1 - t0

        self.oper.set_sigma(self.sigma)
        nfactor = self.oper.nfactor
        count = self.oper.count

        try:
            if not self.oper.factored:
                self.oper.factor()
            self.state = "factored"

            self.eig_solver.solve(
                self.kmat.mat,
                self.bmat.mat,
                self.oper,
                self.sigma,
                W=self._inner_product_matrix(),
                callback=callback,
            )
        except FactorizationError:
            self.state = "failed"
            logging.error("Factorization failed at sigma = %.6e" % self.sigma)
            raise

        # Keep only the eigenpairs that satisfy the tolerance
        mask = self.eig_solver.converged
        self.lam = self.eig_solver.lam0[mask]
        self.err = self.eig_solver.eig_res[mask]
        self.Q = self.eig_solver.Phi[:, mask]
        self.num_converged = len(self.lam)
        self.converged = not self.eig_solver.fail
        self.state = "converged"

        t2 = time.time()
        t = t2 - t1

        self.profile["eigenvalue solve time"] += t
        self.profile["factor count"] += self.oper.nfactor - nfactor
        self.profile["solve preconditioner count"] += self.oper.count - count
        self.profile["eig_solver.m"] = self.eig_solver.m
        self.profile["sigma"] = self.sigma
        self.profile["eig_res"] = self.eig_solver.eig_res.tolist()

        logging.info("Eigenvalue solve time: %5.2f s" % t)
        logging.info("eig_solver.m = %d" % self.eig_solver.m)

        if not self.converged:
            logging.warning(
                "Only %d of %d eigenpairs converged to tolerance %.2e"
                % (self.num_converged, self.num_eigvals, self.eig_tol)
            )

        return self.num_converged

    def _check_current(self, n):
        if self.state != "converged":
            raise StaleEigenpairError(
                "No current eigenpairs (state '%s'), call solve() first" % self.state
            )
        if not 0 <= n < self.num_converged:
            raise ExtractionError(
                "Eigenpair index %d out of range, %d converged eigenpairs"
                % (n, self.num_converged)
            )
        return

    def extract_eigenvalue(self, n):
        """
        Returns the n-th eigenvalue and the relative residual error
        """
        self._check_current(n)
        return self.lam[n], self.err[n]

    def extract_eigenvector(self, n, ans=None):
        """
        Returns the n-th eigenvector and the relative residual error. The
        eigenvector is normalized so that u^T W u = 1.
        """
        self._check_current(n)

        if ans is None:
            return self.Q[:, n].copy(), self.err[n]

        if ans.shape != self.Q[:, n].shape:
            raise ConfigurationError(
                "Output vector has shape %s, expected %s"
                % (ans.shape, self.Q[:, n].shape)
            )
        ans[:] = self.Q[:, n]

        return ans, self.err[n]

    def check_eigenvector(self, n):
        """
        Print the norms of K u, lam B u and the residual for the n-th eigenpair
        """
        lam, _ = self.extract_eigenvalue(n)
        u = self.Q[:, n]

        Ku = self.kmat.mult(u)
        Bu = lam * self.bmat.mult(u)
        res = np.linalg.norm(Ku - Bu)
        rel = res / np.linalg.norm(Ku)

        print("||K u||:          %15.5e" % np.linalg.norm(Ku))
        print("||lam B u||:      %15.5e" % np.linalg.norm(Bu))
        print("||K u - lam B u||: %15.5e" % res)
        print("Relative residual: %15.5e" % rel)

        return rel

    def _orthogonality_matrix(self):
        if self.state != "converged":
            raise StaleEigenpairError("No current eigenpairs, call solve() first")

        W = self._inner_product_matrix()
        return self.Q.T @ (W @ self.Q)

    def check_orthogonality(self):
        """
        Returns the largest off-diagonal entry of U^T W U
        """
        UWU = self._orthogonality_matrix()
        if UWU.shape[0] < 2:
            return 0.0

        off = UWU - np.diag(np.diag(UWU))
        return np.max(np.abs(off))

    def print_orthogonality(self):
        UWU = self._orthogonality_matrix()
        for i in range(UWU.shape[0]):
            print(" ".join("%10.3e" % v for v in UWU[i, :]))
        return

    def eval_eigen_dv_sens(self, n, fdv_sens=None, num_dvs=None):
        """
        Compute the derivative of the n-th eigenvalue wrt the design variables

        Parameters
        ----------
        n : int
            The eigenpair index.
        fdv_sens : ndarray
            Optional output buffer of length num_dvs.
        num_dvs : int
            Expected number of design variables.
        """
        lam, _ = self.extract_eigenvalue(n)

        ndv = self.model.num_design_vars
        if num_dvs is not None and num_dvs != ndv:
            raise ConfigurationError(
                "num_dvs = %d does not match the %d model design variables"
                % (num_dvs, ndv)
            )
        if fdv_sens is not None and len(fdv_sens) != ndv:
            raise ConfigurationError(
                "Sensitivity buffer has length %d, expected %d" % (len(fdv_sens), ndv)
            )

        t0 = time.time()

        dfdx = eval_eigenvalue_dv_sens(
            self.model,
            self.kind_a,
            self.kind_b,
            lam,
            self.Q[:, n],
            self.bmat,
            path=self.path,
            load_case=self.load_case,
            path_dependent=self.path_dependent,
            fdv_sens=fdv_sens,
        )

        t = time.time() - t0
        self.profile["sensitivity time"] += t
        logging.info("Eigenvalue sensitivity time: %5.2f s" % t)

        return dfdx

    @timeit(print_time=True)
    def check_eigen_dv_sens(self, n, p=None, dh=1e-6):
        """
        Check the eigenvalue derivative against a central difference along
        the direction p. The design is restored afterwards.
        """
        ans = self.eval_eigen_dv_sens(n)

        x0 = np.array(self.model.get_design_vars(), dtype=float)
        if p is None:
            rng = np.random.default_rng(1234)
            p = rng.uniform(low=-1.0, high=1.0, size=x0.shape)
        ans = np.dot(ans, p)

        try:
            self.set_design_vars(x0 + dh * p)
            self.solve()
            lam_p = self.extract_eigenvalue(n)[0]

            self.set_design_vars(x0 - dh * p)
            self.solve()
            lam_m = self.extract_eigenvalue(n)[0]
        finally:
            self.set_design_vars(x0)

        self.solve()

        cd = (lam_p - lam_m) / (2 * dh)
        rel_err = (ans - cd) / cd if cd != 0.0 else ans - cd

        print(
            "Eigenvalue[%d] sensitivity: ans: %10.5e,  cd: %10.5e,  rel.err: %10.5e"
            % (n, ans, cd, rel_err)
        )

        return ans, cd, rel_err

    def check_eigenvalues(self, k=None, rtol=1e-6):
        """
        Check the eigenvalues against scipy.sparse.linalg.eigsh driven by the
        same shift and invert operator
        """
        if self.state != "converged":
            raise StaleEigenpairError("No current eigenpairs, call solve() first")

        n = self.kmat.shape[0]
        if k is None:
            k = self.num_converged
        k = min(k, self.num_converged, n - 1)
        if k < 1:
            return np.zeros(0), True

        # W @ (K - sigma * B)^{-1} @ B is symmetric, solve W-op phi = mu W phi
        W = self._inner_product_matrix()
        if sparse.issparse(W):
            W = W.tocsc()
        Wop = LinearOperator(
            shape=(n, n), matvec=lambda x: W @ self.oper.apply(np.ravel(x)), dtype=float
        )

        mu = eigsh(Wop, k=k, M=W, which="LM", tol=1e-12, return_eigenvectors=False)
        lam0 = self.sigma + 1.0 / mu
        lam0 = lam0[sort_by_shift_distance(lam0, self.sigma)]

        ok = np.allclose(lam0, self.lam[:k], rtol=rtol, atol=0.0)

        print("Result eigenvalues = ", self.lam[:k])
        print("Scipy.eigsh        = ", lam0)
        ic(ok)

        return lam0, ok

    def plot_convergence(self, path=None):
        """
        Plot the Ritz residual estimates of the requested eigenpairs at each
        Lanczos step
        """
        hist = self.eig_solver.residual_history
        if len(hist) == 0:
            raise StaleEigenpairError("No Lanczos history, call solve() first")

        nmax = max(len(h) for h in hist)
        est = np.full((len(hist), nmax), np.nan)
        for i, h in enumerate(hist):
            est[i, : len(h)] = h

        fig, ax = plt.subplots(figsize=(5, 4), tight_layout=True)
        steps = np.arange(1, len(hist) + 1)
        for j in range(nmax):
            ax.semilogy(steps, est[:, j], label=r"$\lambda_{%d}$" % j)

        ax.axhline(self.eig_tol, color="k", linestyle="--", linewidth=0.8)
        ax.set_xlabel("Lanczos step")
        ax.set_ylabel("Residual estimate")
        ax.legend(loc="upper right", fontsize=8)

        if path is not None:
            fig.savefig(path, bbox_inches="tight")
            plt.close(fig)

        return fig


class LinearBuckling(EigenAnalysis):
    """
    Linearized buckling analysis K u = lam G(u0) u, where G is the geometric
    stiffness at the equilibrium path u0 of the load case and lam is the
    buckling load factor.

    G is indefinite, so the Lanczos basis is orthonormalized in the K inner
    product and the eigenvectors satisfy u^T K u = 1.
    """

    kind_b = "geometric"
    b_name = "G"
    path_dependent = True

    def _assemble_b(self):
        return self.model.assemble_matrix(self.kind_b, self.path)

    def _inner_product_matrix(self):
        return self.kmat.mat


class FrequencyAnalysis(EigenAnalysis):
    """
    Natural frequency analysis K u = lam M u with lam = omega^2. The
    eigenvectors are mass normalized, u^T M u = 1.
    """

    kind_b = "mass"
    b_name = "M"
    path_dependent = False

    def _assemble_b(self):
        return self.model.assemble_matrix(self.kind_b)

    def _inner_product_matrix(self):
        return self.bmat.mat

    def extract_frequency(self, n):
        """
        Returns the n-th natural frequency omega = sqrt(lam) and the error
        """
        lam, err = self.extract_eigenvalue(n)
        if lam < 0.0:
            raise EigenAnalysisError(
                "Eigenvalue %d is negative (%.6e), no real frequency" % (n, lam)
            )
        return np.sqrt(lam), err
