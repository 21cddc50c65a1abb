import logging
import time

from icecream import ic
import numpy as np
from scipy import sparse
from scipy.sparse import linalg

from failure import von_mises_failure_plane_stress
from fe_utils import gauss_pts, populate_Be, populate_Be_and_He, populate_Be_and_Te


class PlaneStressModel:
    """
    Bilinear quadrilateral plane stress model with nodal density design
    variables.

    The element density is the average of the nodal densities. The stiffness
    and the geometric stiffness are interpolated with SIMP or RAMP, the mass
    linearly or with RAMP. Dirichlet boundary conditions are removed from the
    assembled matrices, which are returned in the reduced space. The
    geometric stiffness is the negative of the stress stiffness, so that a
    compressive equilibrium path gives positive load factors in
    K u = lam G u.
    """

    def __init__(
        self,
        conn,
        X,
        bcs,
        forces={},
        E=1.0,
        nu=0.3,
        ptype_K="simp",
        ptype_M="linear",
        rho0_K=1e-6,
        rho0_M=1e-9,
        rho0_G=1e-6,
        p=3.0,
        q=5.0,
        density=1.0,
    ):
        self.ptype_K = ptype_K.lower()
        self.ptype_M = ptype_M.lower()
        if self.ptype_K not in ("simp", "ramp"):
            raise ValueError(f"Unknown stiffness interpolation {ptype_K!r}")
        if self.ptype_M not in ("linear", "ramp"):
            raise ValueError(f"Unknown mass interpolation {ptype_M!r}")

        self.rho0_K = rho0_K
        self.rho0_M = rho0_M
        self.rho0_G = rho0_G

        self.conn = np.array(conn)
        self.X = np.array(X)
        self.p = p
        self.q = q
        self.density = density

        self.nelems = self.conn.shape[0]
        self.nnodes = int(np.max(self.conn)) + 1
        self.nvars = 2 * self.nnodes

        self.x = np.ones(self.nnodes)

        # Compute the constitutive matrix
        self.E = E
        self.nu = nu
        self.C0 = E * np.array(
            [[1.0, nu, 0.0], [nu, 1.0, 0.0], [0.0, 0.0, 0.5 * (1.0 - nu)]]
        )
        self.C0 *= 1.0 / (1.0 - nu**2)

        self.bcs = bcs
        self.reduced = self._compute_reduced_variables(self.nvars, bcs)

        # A single load case or a list of load cases
        if isinstance(forces, dict):
            forces = [forces]
        self.forces = forces
        self.f = [self._compute_forces(self.nvars, fc) for fc in forces]

        # Set up the i-j indices for the matrix - these are the row
        # and column indices in the stiffness matrix
        self.var = np.zeros((self.nelems, 8), dtype=int)
        self.var[:, ::2] = 2 * self.conn
        self.var[:, 1::2] = 2 * self.conn + 1

        self.i = np.repeat(self.var, 8, axis=1).flatten()
        self.j = np.tile(self.var, (1, 8)).flatten()

        # Map the element entries onto the reduced matrix. All reduced
        # matrices share this pattern.
        index = -np.ones(self.nvars, dtype=int)
        index[self.reduced] = np.arange(len(self.reduced))
        self.red_mask = (index[self.i] >= 0) & (index[self.j] >= 0)
        self.ir = index[self.i[self.red_mask]]
        self.jr = index[self.j[self.red_mask]]

        self._init_quadrature()

        self.Kfact = None
        self.paths = {}

        ic(self.nnodes, self.nelems, len(self.reduced))

        return

    def _compute_reduced_variables(self, nvars, bcs):
        """
        Compute the reduced set of variables
        """
        reduced = list(range(nvars))

        # For each node that is in the boundary condition dictionary
        for node in bcs:
            for index in bcs[node]:
                reduced.remove(2 * node + index)

        return reduced

    def _compute_forces(self, nvars, forces):
        """
        Unpack the dictionary containing the forces
        """
        f = np.zeros(nvars)

        for node in forces:
            f[2 * node] += forces[node][0]
            f[2 * node + 1] += forces[node][1]

        return f

    def _init_quadrature(self):
        # Compute the x and y coordinates of each element
        xe = self.X[self.conn, 0]
        ye = self.X[self.conn, 1]

        self.Be = np.zeros((self.nelems, 3, 8, 4))
        self.He = np.zeros((self.nelems, 2, 8, 4))
        self.Te = np.zeros((self.nelems, 3, 4, 4, 4))
        self.detJ = np.zeros((self.nelems, 4))

        for j in range(2):
            for i in range(2):
                xi, eta = gauss_pts[i], gauss_pts[j]
                index = 2 * j + i

                Bei = self.Be[:, :, :, index]
                Hei = self.He[:, :, :, index]
                Tei = self.Te[:, :, :, :, index]

                self.detJ[:, index] = populate_Be_and_Te(
                    self.nelems, xi, eta, xe, ye, Bei, Tei
                )
                populate_Be_and_He(self.nelems, xi, eta, xe, ye, Bei, Hei)

        # Strain-displacement matrix at the element centroid
        self.Be0 = np.zeros((self.nelems, 3, 8))
        populate_Be(self.nelems, 0.0, 0.0, xe, ye, self.Be0)

        return

    @property
    def num_design_vars(self):
        return self.nnodes

    def get_design_vars(self):
        return self.x.copy()

    def set_design_vars(self, x):
        x = np.asarray(x, dtype=float)
        if x.shape != self.x.shape:
            raise ValueError(
                f"Design vector has shape {x.shape}, expected {self.x.shape}"
            )
        self.x[:] = x

        # The factorization and the equilibrium paths depend on the design
        self.Kfact = None
        self.paths = {}

        return

    @property
    def rhoE(self):
        return np.mean(self.x[self.conn[:, :4]], axis=1)

    def _stiffness_interp(self, rhoE, rho0):
        if self.ptype_K == "simp":
            return rhoE**self.p + rho0
        else:  # ramp
            return rhoE / (1.0 + self.q * (1.0 - rhoE)) + rho0

    def _stiffness_interp_deriv(self, rhoE):
        if self.ptype_K == "simp":
            return self.p * rhoE ** (self.p - 1.0)
        else:  # ramp
            return (1.0 + self.q) / (1.0 + self.q * (1.0 - rhoE)) ** 2

    def _mass_interp(self, rhoE):
        if self.ptype_M == "ramp":
            return self.density * (
                (self.q + 1.0) * rhoE / (1.0 + self.q * rhoE) + self.rho0_M
            )
        else:  # linear
            return self.density * rhoE

    def _mass_interp_deriv(self, rhoE):
        if self.ptype_M == "ramp":
            return self.density * (1.0 + self.q) / (1.0 + self.q * rhoE) ** 2
        else:  # linear
            return self.density * np.ones(rhoE.shape)

    def _element_vector(self, u):
        ue = np.zeros((self.nelems, 8))
        ue[:, ::2] = u[2 * self.conn]
        ue[:, 1::2] = u[2 * self.conn + 1]
        return ue

    def _constitutive(self, rhoE, rho0):
        C = np.outer(self._stiffness_interp(rhoE, rho0), self.C0)
        return C.reshape((self.nelems, 3, 3))

    def get_element_stiffness(self, rhoE):
        C = self._constitutive(rhoE, self.rho0_K)

        # Assemble all of the the 8 x 8 element stiffness matrix
        Ke = np.zeros((self.nelems, 8, 8))

        for i in range(4):
            Be = self.Be[:, :, :, i]
            detJ = self.detJ[:, i]
            Ke += detJ.reshape(-1, 1, 1) * Be.transpose(0, 2, 1) @ C @ Be

        return Ke

    def get_element_mass(self, rhoE):
        density = self._mass_interp(rhoE)

        Me = np.zeros((self.nelems, 8, 8))

        for i in range(4):
            detJ = self.detJ[:, i]
            He = self.He[:, :, :, i]
            Me += np.einsum("n,nij,nil -> njl", density * detJ, He, He)

        return Me

    def get_element_stress_stiffness(self, rhoE, u):
        C = self._constitutive(rhoE, self.rho0_G)
        ue = self._element_vector(u)

        Ge = np.zeros((self.nelems, 8, 8))

        for i in range(4):
            detJ = self.detJ[:, i]
            Be = self.Be[:, :, :, i]
            Te = self.Te[:, :, :, :, i]

            # Compute the stresses in each element
            s = np.einsum("nik,nk -> ni", C @ Be, ue)
            G0e = detJ.reshape(-1, 1, 1) * np.einsum("ni,nijl -> njl", s, Te)

            Ge[:, 0::2, 0::2] += G0e
            Ge[:, 1::2, 1::2] += G0e

        return Ge

    def _assemble(self, Ae, reduced=True):
        if not reduced:
            return sparse.csc_matrix(
                (Ae.flatten(), (self.i, self.j)), shape=(self.nvars, self.nvars)
            )

        nr = len(self.reduced)
        return sparse.csc_matrix(
            (Ae.flatten()[self.red_mask], (self.ir, self.jr)), shape=(nr, nr)
        )

    def assemble_matrix(self, kind, path=None, reduced=True):
        """
        Assemble the "stiffness", "mass" or "geometric" matrix. The geometric
        stiffness is evaluated at the equilibrium path.
        """
        t0 = time.time()
        rhoE = self.rhoE

        if kind == "stiffness":
            Ae = self.get_element_stiffness(rhoE)
        elif kind == "mass":
            Ae = self.get_element_mass(rhoE)
        elif kind == "geometric":
            if path is None:
                raise ValueError("The geometric stiffness requires an equilibrium path")
            Ae = -self.get_element_stress_stiffness(rhoE, path)
        else:
            raise ValueError(f"Unknown matrix kind {kind!r}")

        A = self._assemble(Ae, reduced=reduced)
        logging.info("Assembly time (%s): %5.2f s" % (kind, time.time() - t0))

        return A

    def _factor_stiffness(self):
        if self.Kfact is None:
            Kr = self.assemble_matrix("stiffness")
            self.Kfact = linalg.factorized(Kr.tocsc())
        return self.Kfact

    def get_equilibrium_path(self, load_case=0):
        """
        Solve K u = f for the load case, returns the full displacement vector
        """
        if not 0 <= load_case < len(self.f):
            raise ValueError(
                f"Load case {load_case} out of range, {len(self.f)} load cases"
            )

        if load_case not in self.paths:
            t0 = time.time()
            fr = self.reduce_vector(self.f[load_case])
            ur = self._factor_stiffness()(fr)
            self.paths[load_case] = self.full_vector(ur)
            logging.info("Equilibrium path solve time: %5.2f s" % (time.time() - t0))

        return self.paths[load_case]

    def solve_tangent_adjoint(self, rhs, load_case=0):
        """
        Solve Kt^T adj = rhs. The equilibrium is linear, so Kt = K.
        """
        adjr = self._factor_stiffness()(self.reduce_vector(rhs))
        return self.full_vector(adjr)

    def _to_full(self, v):
        if v.shape[0] == self.nvars:
            return v
        return self.full_vector(v)

    def _nodal_gradient(self, dfdrhoE):
        dfdrho = np.zeros(self.nnodes)
        for i in range(4):
            np.add.at(dfdrho, self.conn[:, i], dfdrhoE)
        dfdrho *= 0.25
        return dfdrho

    def _stress_stiffness_product(self, psie, phie, i):
        """psi^T (s_i Te) phi summed over both displacement components"""
        Te = self.Te[:, :, :, :, i]
        se = np.einsum("nijl,nj,nl -> ni", Te, psie[:, ::2], phie[:, ::2])
        se += np.einsum("nijl,nj,nl -> ni", Te, psie[:, 1::2], phie[:, 1::2])
        return se

    def eval_matrix_dv_sens(self, kind, psi, phi, path=None):
        """
        Compute the derivative of psi^T A phi wrt the nodal design variables
        with the equilibrium path held fixed
        """
        rhoE = self.rhoE
        psie = self._element_vector(self._to_full(psi))
        phie = self._element_vector(self._to_full(phi))

        dfdrhoE = np.zeros(self.nelems)

        if kind == "stiffness":
            for i in range(4):
                Be = self.Be[:, :, :, i]
                detJ = self.detJ[:, i]

                se = np.einsum("nij,nj -> ni", Be, psie)
                te = np.einsum("nij,nj -> ni", Be, phie)
                Cte = np.einsum("ij,nj -> ni", self.C0, te)
                dfdrhoE += detJ * np.einsum("ni,ni -> n", se, Cte)

            dfdrhoE *= self._stiffness_interp_deriv(rhoE)

        elif kind == "mass":
            for i in range(4):
                He = self.He[:, :, :, i]
                detJ = self.detJ[:, i]

                eu = np.einsum("nij,nj -> ni", He, psie)
                ev = np.einsum("nij,nj -> ni", He, phie)
                dfdrhoE += np.einsum("n,ni,ni -> n", detJ, eu, ev)

            dfdrhoE *= self._mass_interp_deriv(rhoE)

        elif kind == "geometric":
            if path is None:
                raise ValueError("The geometric stiffness requires an equilibrium path")
            ue = self._element_vector(path)

            for i in range(4):
                Be = self.Be[:, :, :, i]
                detJ = self.detJ[:, i]

                s0 = np.einsum("ij,njk,nk -> ni", self.C0, Be, ue)
                se = self._stress_stiffness_product(psie, phie, i)
                dfdrhoE += detJ * np.einsum("ni,ni -> n", s0, se)

            dfdrhoE *= -self._stiffness_interp_deriv(rhoE)

        else:
            raise ValueError(f"Unknown matrix kind {kind!r}")

        return self._nodal_gradient(dfdrhoE)

    def eval_matrix_path_sens(self, kind, psi, phi, path):
        """
        Compute the derivative of psi^T A(path) phi wrt the full path vector
        """
        dfdu = np.zeros(self.nvars)
        if kind != "geometric":
            return dfdu

        C = self._constitutive(self.rhoE, self.rho0_G)
        psie = self._element_vector(self._to_full(psi))
        phie = self._element_vector(self._to_full(phi))

        dfdue = np.zeros((self.nelems, 8))
        for i in range(4):
            Be = self.Be[:, :, :, i]
            detJ = self.detJ[:, i]

            # The stress is s = C Be ue, so d(s . se)/due = (C Be)^T se
            dfds = detJ[:, np.newaxis] * self._stress_stiffness_product(psie, phie, i)
            dfdue += np.einsum("nij,ni -> nj", C @ Be, dfds)

        np.add.at(dfdu, 2 * self.conn, dfdue[:, 0::2])
        np.add.at(dfdu, 2 * self.conn + 1, dfdue[:, 1::2])

        return -dfdu

    def eval_residual_dv_sens(self, adj, path, load_case=0):
        """
        Compute adj^T dR/dx for the residual R = K(x) u - f
        """
        return self.eval_matrix_dv_sens("stiffness", adj, path)

    def eval_failure(self, u, ys):
        """
        Element von Mises failure values at the centroid for the full
        displacement vector u
        """
        ue = self._element_vector(self._to_full(u))
        s = np.einsum("ij,njk,nk -> ni", self.C0, self.Be0, ue)
        return von_mises_failure_plane_stress(s, ys)

    def reduce_vector(self, forces):
        """
        Eliminate essential boundary conditions from the vector
        """
        return forces[self.reduced]

    def reduce_matrix(self, matrix):
        """
        Eliminate essential boundary conditions from the matrix
        """
        temp = matrix[self.reduced, :]
        return temp[:, self.reduced]

    def full_vector(self, vec):
        """
        Transform from a reduced vector without dirichlet BCs to the full vector
        """
        temp = np.zeros((self.nvars,) + vec.shape[1:], dtype=vec.dtype)
        temp[self.reduced, ...] = vec[:, ...]
        return temp


def domain_compressed_column(nx=8, ny=16, Lx=1.0, Ly=2.0, P=1e-3, shear_force=False):
    """
    ________
    |      |
    |      |
    |      | ny
    |      |
    |______|
       nx

    The bottom nodes are clamped and a vertical load P is applied at the
    middle of the top edge. With shear_force, a second load case distributes
    a horizontal load P along the top edge.
    """
    if nx < 2 or ny < 1:
        raise ValueError(f"The column needs nx >= 2 and ny >= 1, got {nx} x {ny}")

    x = np.linspace(0, Lx, nx + 1)
    y = np.linspace(0, Ly, ny + 1)

    nelems = nx * ny
    nnodes = (nx + 1) * (ny + 1)
    nodes = np.arange(nnodes, dtype=int).reshape(nx + 1, ny + 1)
    conn = np.zeros((nelems, 4), dtype=int)
    X = np.zeros((nnodes, 2))

    for j in range(ny + 1):
        for i in range(nx + 1):
            X[nodes[i, j], 0] = x[i]
            X[nodes[i, j], 1] = y[j]

    for j in range(ny):
        for i in range(nx):
            conn[i + nx * j, 0] = nodes[i, j]
            conn[i + nx * j, 1] = nodes[i + 1, j]
            conn[i + nx * j, 2] = nodes[i + 1, j + 1]
            conn[i + nx * j, 3] = nodes[i, j + 1]

    # apply boundary conditions at the bottom nodes
    bcs = {}
    for i in range(nx + 1):
        bcs[nodes[i, 0]] = [0, 1]

    # apply a vertical force at the top middle, independent of the mesh size
    offset = int(np.ceil(nx / 30))
    axial = {}
    for i in range(offset):
        axial[nodes[nx // 2 - i - 1, ny]] = [0, -P / (2 * offset + 1)]
        axial[nodes[nx // 2 + i + 1, ny]] = [0, -P / (2 * offset + 1)]
    axial[nodes[nx // 2, ny]] = [0, -P / (2 * offset + 1)]

    if not shear_force:
        return conn, X, bcs, axial

    shear = {}
    for i in range(nx + 1):
        shear[nodes[i, ny]] = [P / (nx + 1), 0]

    return conn, X, bcs, [axial, shear]


def make_model(nx=8, ny=None, Lx=1.0, Ly=2.0, P=1e-3, shear_force=False, **kwargs):
    """
    Create a plane stress model of the compressed column

    Parameters
    ----------
    nx : int
        Number of elements in the x-direction
    ny : int
        Number of elements in the y-direction, Ly / Lx * nx when None
    kwargs : dict
        Material and interpolation options passed to PlaneStressModel
    """
    if ny is None:
        ny = int(Ly / Lx * nx)

    conn, X, bcs, forces = domain_compressed_column(
        nx=nx, ny=ny, Lx=Lx, Ly=Ly, P=P, shear_force=shear_force
    )

    return PlaneStressModel(conn, X, bcs, forces=forces, **kwargs)
