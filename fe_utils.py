import numpy as np

# 2 x 2 Gauss quadrature on the reference element, unit weights
gauss_pts = [-1.0 / np.sqrt(3.0), 1.0 / np.sqrt(3.0)]


def shape_functions(xi, eta):
    N = 0.25 * np.array(
        [
            (1.0 - xi) * (1.0 - eta),
            (1.0 + xi) * (1.0 - eta),
            (1.0 + xi) * (1.0 + eta),
            (1.0 - xi) * (1.0 + eta),
        ]
    )
    Nxi = 0.25 * np.array([-(1.0 - eta), (1.0 - eta), (1.0 + eta), -(1.0 + eta)])
    Neta = 0.25 * np.array([-(1.0 - xi), -(1.0 + xi), (1.0 + xi), (1.0 - xi)])

    return N, Nxi, Neta


def shape_derivatives(xi, eta, xe, ye):
    """
    Compute the shape function derivatives in physical coordinates for all
    elements at the point (xi, eta)

    Returns
    -------
    N : ndarray (4,)
    Nx, Ny : ndarray (nelems, 4)
    detJ : ndarray (nelems,)
    """
    N, Nxi, Neta = shape_functions(xi, eta)

    # Jacobian of the isoparametric map
    J00 = np.dot(xe, Nxi)
    J10 = np.dot(ye, Nxi)
    J01 = np.dot(xe, Neta)
    J11 = np.dot(ye, Neta)

    detJ = J00 * J11 - J01 * J10
    if np.any(detJ <= 0.0):
        raise ValueError("Element with non-positive Jacobian determinant")

    # [Nx, Ny] = [Nxi, Neta] * invJ
    Nx = np.outer(J11 / detJ, Nxi) + np.outer(-J10 / detJ, Neta)
    Ny = np.outer(-J01 / detJ, Nxi) + np.outer(J00 / detJ, Neta)

    return N, Nx, Ny, detJ


def populate_Be(nelems, xi, eta, xe, ye, Be):
    """
    Populate the strain-displacement matrices for all elements at a point
    """
    N, Nx, Ny, detJ = shape_derivatives(xi, eta, xe, ye)

    Be[:, 0, ::2] = Nx
    Be[:, 1, 1::2] = Ny
    Be[:, 2, ::2] = Ny
    Be[:, 2, 1::2] = Nx

    return detJ


def populate_Be_and_He(nelems, xi, eta, xe, ye, Be, He):
    """
    Populate B matrices and the displacement interpolation He for all
    elements at a quadrature point
    """
    detJ = populate_Be(nelems, xi, eta, xe, ye, Be)

    N = shape_functions(xi, eta)[0]
    He[:, 0, ::2] = N
    He[:, 1, 1::2] = N

    return detJ


def populate_Be_and_Te(nelems, xi, eta, xe, ye, Be, Te):
    """
    Populate B matrices and the stress stiffening tensor for all elements at
    a quadrature point. For a stress s, the element stress stiffness of one
    displacement component is s_i * Te[:, i, :, :].
    """
    N, Nx, Ny, detJ = shape_derivatives(xi, eta, xe, ye)

    Be[:, 0, ::2] = Nx
    Be[:, 1, 1::2] = Ny
    Be[:, 2, ::2] = Ny
    Be[:, 2, 1::2] = Nx

    Te[:, 0, :, :] = np.einsum("ni,nj -> nij", Nx, Nx)
    Te[:, 1, :, :] = np.einsum("ni,nj -> nij", Ny, Ny)
    Te[:, 2, :, :] = np.einsum("ni,nj -> nij", Nx, Ny) + np.einsum(
        "ni,nj -> nij", Ny, Nx
    )

    return detJ
