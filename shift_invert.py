import numpy as np
from scipy import linalg as dense_linalg
from scipy import sparse
from scipy.sparse.linalg import LinearOperator, splu


class EigenAnalysisError(RuntimeError):
    pass


class ConfigurationError(EigenAnalysisError, ValueError):
    pass


class FactorizationError(EigenAnalysisError):
    def __init__(self, msg, name=None, sigma=None):
        super().__init__(msg)
        self.name = name
        self.sigma = sigma


class ExtractionError(EigenAnalysisError, IndexError):
    pass


class StaleEigenpairError(EigenAnalysisError):
    pass


def _check_pivots(piv, name):
    """
    Reject factorizations with exactly zero or numerically negligible pivots
    """
    piv = np.abs(piv)
    if not np.all(np.isfinite(piv)):
        raise FactorizationError(f"Non-finite pivot in the factorization of {name}")

    pmax = np.max(piv) if piv.size > 0 else 0.0
    tol = piv.size * np.finfo(float).eps * pmax
    if pmax == 0.0 or np.min(piv) <= tol:
        raise FactorizationError(
            f"Matrix {name} is numerically singular: min pivot {np.min(piv):.3e}, "
            f"max pivot {pmax:.3e}"
        )
    return


class SpLuSolver:
    """
    Sparse direct solver based on the SuperLU factorization in scipy
    """

    def __init__(self):
        self.lu = None
        self.count = 0
        return

    def factor(self, mat):
        csc = mat.tocsc()
        try:
            self.lu = splu(csc)
        except RuntimeError as e:
            self.lu = None
            raise FactorizationError(
                f"SuperLU failed to factor {mat.name}: {e}", name=mat.name
            ) from e

        try:
            _check_pivots(self.lu.U.diagonal(), mat.name)
        except FactorizationError:
            self.lu = None
            raise

        return

    def solve(self, rhs):
        if self.lu is None:
            raise EigenAnalysisError("SpLuSolver.solve called before factor")

        if rhs.ndim == 2:
            self.count += rhs.shape[1]
        else:
            self.count += 1

        return self.lu.solve(rhs.astype(self.lu.U.dtype))


class DenseLuSolver:
    """
    Dense LU solver for small problems stored as numpy arrays
    """

    def __init__(self):
        self.lu_piv = None
        self.count = 0
        return

    def factor(self, mat):
        a = mat.toarray()
        if not np.all(np.isfinite(a)):
            raise FactorizationError(f"Matrix {mat.name} has non-finite entries")

        lu, piv = dense_linalg.lu_factor(a, check_finite=False)
        _check_pivots(np.diag(lu), mat.name)
        self.lu_piv = (lu, piv)

        return

    def solve(self, rhs):
        if self.lu_piv is None:
            raise EigenAnalysisError("DenseLuSolver.solve called before factor")

        if rhs.ndim == 2:
            self.count += rhs.shape[1]
        else:
            self.count += 1

        return dense_linalg.lu_solve(self.lu_piv, rhs, check_finite=False)


class SparseMat:
    """
    Sparse matrix with a fixed non-zero pattern.

    copy_values and axpy operate directly on the stored values, so both
    matrices involved must share the same pattern.
    """

    def __init__(self, mat, name="A"):
        self.name = name
        self.mat = self._canonical(mat)
        return

    @staticmethod
    def _canonical(mat):
        mat = sparse.csr_matrix(mat, copy=True)
        mat.sum_duplicates()
        mat.sort_indices()
        return mat

    @property
    def shape(self):
        return self.mat.shape

    @property
    def dtype(self):
        return self.mat.dtype

    def same_pattern(self, other):
        return (
            self.shape == other.shape
            and np.array_equal(self.mat.indptr, other.mat.indptr)
            and np.array_equal(self.mat.indices, other.mat.indices)
        )

    def check_compatible(self, other):
        if not isinstance(other, SparseMat):
            raise ConfigurationError(
                f"Cannot combine sparse matrix {self.name} with "
                f"{type(other).__name__} {other.name}"
            )
        if self.shape != other.shape:
            raise ConfigurationError(
                f"Matrix {self.name} has shape {self.shape}, "
                f"but {other.name} has shape {other.shape}"
            )
        if not self.same_pattern(other):
            raise ConfigurationError(
                f"Matrices {self.name} and {other.name} have different sparsity patterns"
            )
        return

    def duplicate(self, name=None):
        return SparseMat(self.mat, name=name or self.name)

    def copy_values(self, other):
        self.check_compatible(other)
        self.mat.data[:] = other.mat.data
        return

    def axpy(self, alpha, other):
        self.check_compatible(other)
        self.mat.data += alpha * other.mat.data
        return

    def set_values(self, mat):
        new = self._canonical(mat)
        if new.shape != self.shape:
            raise ConfigurationError(
                f"Reassembled {self.name} has shape {new.shape}, expected {self.shape}"
            )
        if not (
            np.array_equal(new.indptr, self.mat.indptr)
            and np.array_equal(new.indices, self.mat.indices)
        ):
            raise ConfigurationError(
                f"Reassembled {self.name} changed its sparsity pattern"
            )
        self.mat.data[:] = new.data
        return

    def mult(self, x):
        return self.mat @ x

    def tocsc(self):
        return self.mat.tocsc()

    def toarray(self):
        return self.mat.toarray()

    def default_solver(self):
        return SpLuSolver()


class DenseMat:
    """
    Dense matrix stored as a two-dimensional numpy array
    """

    def __init__(self, mat, name="A"):
        self.name = name
        self.mat = np.array(mat, copy=True)
        if self.mat.ndim != 2 or self.mat.shape[0] != self.mat.shape[1]:
            raise ConfigurationError(f"Matrix {name} must be square and 2D")
        if not np.issubdtype(self.mat.dtype, np.inexact):
            self.mat = self.mat.astype(float)
        return

    @property
    def shape(self):
        return self.mat.shape

    @property
    def dtype(self):
        return self.mat.dtype

    def check_compatible(self, other):
        if not isinstance(other, DenseMat):
            raise ConfigurationError(
                f"Cannot combine dense matrix {self.name} with "
                f"{type(other).__name__} {other.name}"
            )
        if self.shape != other.shape:
            raise ConfigurationError(
                f"Matrix {self.name} has shape {self.shape}, "
                f"but {other.name} has shape {other.shape}"
            )
        return

    def duplicate(self, name=None):
        return DenseMat(self.mat, name=name or self.name)

    def copy_values(self, other):
        self.check_compatible(other)
        self.mat[:] = other.mat
        return

    def axpy(self, alpha, other):
        self.check_compatible(other)
        self.mat += alpha * other.mat
        return

    def set_values(self, mat):
        mat = np.asarray(mat)
        if mat.shape != self.shape:
            raise ConfigurationError(
                f"Reassembled {self.name} has shape {mat.shape}, expected {self.shape}"
            )
        self.mat[:] = mat
        return

    def mult(self, x):
        return self.mat @ x

    def toarray(self):
        return self.mat.copy()

    def default_solver(self):
        return DenseLuSolver()


def as_matrix(mat, name="A"):
    """
    Wrap a scipy sparse matrix or array-like as a matrix with copy/axpy support
    """
    if isinstance(mat, (SparseMat, DenseMat)):
        return mat
    if sparse.issparse(mat):
        return SparseMat(mat, name=name)
    return DenseMat(mat, name=name)


class ShiftInvertOperator(LinearOperator):
    """
    Apply the shift and invert operator

    y = (K - sigma * B)^{-1} @ B @ x

    The shifted matrix is formed in the auxiliary matrix by a copy and an
    axpy, and is factored once for each value of sigma.

    Parameters
    ----------
    kmat : SparseMat or DenseMat
        The stiffness matrix K.
    bmat : SparseMat or DenseMat
        The mass matrix M (frequency) or geometric stiffness G (buckling).
    aux_mat : SparseMat or DenseMat
        Storage for K - sigma * B. A copy of K is created when None.
    solver : object
        Provides factor(mat) and solve(rhs). Picked from the matrix type when None.
    sigma : float
        The initial shift.
    """

    def __init__(self, kmat, bmat, aux_mat=None, solver=None, sigma=0.0):
        kmat.check_compatible(bmat)
        if aux_mat is None:
            aux_mat = kmat.duplicate(name="aux")
        else:
            kmat.check_compatible(aux_mat)

        self.kmat = kmat
        self.bmat = bmat
        self.aux_mat = aux_mat
        self.solver = solver if solver is not None else kmat.default_solver()
        self.sigma = sigma

        self.factored = False
        self.nfactor = 0
        self.count = 0

        super().__init__(dtype=np.result_type(kmat.dtype, bmat.dtype), shape=kmat.shape)

        return

    def set_sigma(self, sigma):
        if sigma != self.sigma:
            self.sigma = sigma
            self.factored = False
        return

    def invalidate(self):
        """Drop the factorization after K or B have been reassembled"""
        self.factored = False
        return

    def factor(self):
        self.aux_mat.copy_values(self.kmat)
        self.aux_mat.axpy(-self.sigma, self.bmat)

        name = f"{self.kmat.name} - sigma * {self.bmat.name}"
        try:
            self.solver.factor(self.aux_mat)
        except FactorizationError as e:
            self.factored = False
            raise FactorizationError(
                f"Factorization of {name} failed at sigma = {self.sigma}: {e}",
                name=name,
                sigma=self.sigma,
            ) from e

        self.factored = True
        self.nfactor += 1

        return

    def apply(self, x):
        if not self.factored:
            self.factor()

        y = self.solver.solve(self.bmat.mult(x))
        self.count += 1

        if not np.all(np.isfinite(y)):
            raise FactorizationError(
                f"Shift-invert solve produced non-finite values at sigma = {self.sigma}",
                name=self.aux_mat.name,
                sigma=self.sigma,
            )

        return y

    def _matvec(self, x):
        return self.apply(np.ravel(x))
