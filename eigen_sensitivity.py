"""
Design sensitivities of the eigenvalues of K(x) phi = lam B(x, u(x)) phi.

For a B-normalized eigenpair the derivative is

    dlam/dx = [phi^T dK/dx phi - lam phi^T dB/dx phi + lam adj^T dR/dx] / (phi^T B phi)

The last term only appears in buckling, where B = G depends on the
equilibrium path u(x) defined by R(u, x) = 0, and adj solves
Kt^T adj = d(phi^T G phi)/du.
"""

import logging
import time

from joblib import Parallel, delayed
import numpy as np

from analysis_utils import _print_progress, n_jobs
from shift_invert import ConfigurationError, EigenAnalysisError


def eval_inner_product_dv_sens(model, kind, psi, phi, path=None):
    """
    Compute d(psi^T A phi)/dx for all design variables, where A is the matrix
    of the given kind.

    Uses model.eval_matrix_dv_sens when the model provides it, otherwise
    loops over the per-variable matrices from model.eval_matrix_dv_deriv.
    """
    if hasattr(model, "eval_matrix_dv_sens"):
        return np.asarray(model.eval_matrix_dv_sens(kind, psi, phi, path))

    if not hasattr(model, "eval_matrix_dv_deriv"):
        raise ConfigurationError(
            "Model provides neither eval_matrix_dv_sens nor eval_matrix_dv_deriv"
        )

    ndv = model.num_design_vars

    def iterator(k):
        dA = model.eval_matrix_dv_deriv(kind, k, path)
        val = psi.dot(dA @ phi)
        _print_progress(k, ndv, t0, f"d{kind}/dx")
        return val

    t0 = time.time()

    results = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(iterator)(k) for k in range(ndv)
    )

    return np.array(results, dtype=float)


def rayleigh_quotient_dv_sens(model, kind_a, kind_b, lam, phi, path=None):
    """
    Compute phi^T (dA/dx - lam * dB/dx) phi with the path held fixed
    """
    dAdx = eval_inner_product_dv_sens(model, kind_a, phi, phi, path)
    dBdx = eval_inner_product_dv_sens(model, kind_b, phi, phi, path)

    return dAdx - lam * dBdx


def path_adjoint_dv_sens(model, kind_b, lam, phi, path, load_case=0):
    """
    Compute the contribution of the equilibrium path, lam * adj^T dR/dx

    A single adjoint solve is shared by all design variables.
    """
    # Compute the derivative of phi^T * G(u, x) * phi wrt the path
    dfdu = model.eval_matrix_path_sens(kind_b, phi, phi, path)

    # Solve Kt^T * adj = d(phi^T * G * phi)/du
    adj = model.solve_tangent_adjoint(dfdu, load_case)

    return lam * np.asarray(model.eval_residual_dv_sens(adj, path, load_case))


def eval_eigenvalue_dv_sens(
    model,
    kind_a,
    kind_b,
    lam,
    phi,
    bmat,
    path=None,
    load_case=0,
    path_dependent=False,
    fdv_sens=None,
):
    """
    Compute the derivative of the eigenvalue lam wrt all design variables

    Parameters
    ----------
    model : object
        The assembler providing the matrix derivatives.
    kind_a, kind_b : str
        Matrix kinds of the left and right hand sides, e.g. "stiffness" and "mass".
    lam : float
        The converged eigenvalue.
    phi : ndarray
        The converged eigenvector.
    bmat : SparseMat or DenseMat
        The assembled right hand side matrix used for the normalization.
    path : ndarray
        The equilibrium path used to evaluate B.
    path_dependent : bool
        Include the equilibrium path adjoint term.
    fdv_sens : ndarray
        Output buffer. A new array is returned when None.
    """
    t0 = time.time()

    denom = phi.dot(bmat.mult(phi))
    if denom == 0.0 or not np.isfinite(denom):
        raise EigenAnalysisError(
            "Eigenvector has zero norm in %s, cannot normalize the derivative"
            % bmat.name
        )

    dfdx = rayleigh_quotient_dv_sens(model, kind_a, kind_b, lam, phi, path)

    t1 = time.time()
    logging.info("Rayleigh quotient derivative time: %5.2f s" % (t1 - t0))

    if path_dependent:
        dfdx = dfdx + path_adjoint_dv_sens(model, kind_b, lam, phi, path, load_case)
        logging.info("Path adjoint derivative time: %5.2f s" % (time.time() - t1))

    dfdx = dfdx / denom

    if fdv_sens is not None:
        fdv_sens[:] = dfdx
        return fdv_sens

    return dfdx
