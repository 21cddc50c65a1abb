"""
von Mises failure criteria and their derivatives wrt the stress components.

3D stress ordering: [sx, sy, sz, syz, sxz, sxy]
Plane stress ordering: [sx, sy, sxy]

All functions accept a single stress state or an array of stress states
stacked along the leading axes.
"""

import numpy as np


def _von_mises_3d(s):
    return np.sqrt(
        0.5
        * (
            (s[..., 0] - s[..., 1]) ** 2
            + (s[..., 0] - s[..., 2]) ** 2
            + (s[..., 1] - s[..., 2]) ** 2
            + 6.0 * (s[..., 3] ** 2 + s[..., 4] ** 2 + s[..., 5] ** 2)
        )
    )


def _von_mises_plane_stress(s):
    return np.sqrt(
        s[..., 0] ** 2 + s[..., 1] ** 2 - s[..., 0] * s[..., 1] + 3.0 * s[..., 2] ** 2
    )


def von_mises_failure_3d(s, ys):
    s = np.asarray(s, dtype=float)
    return _von_mises_3d(s) / ys


def von_mises_failure_3d_stress_sens(s, ys):
    """
    Returns the failure value and its derivative wrt each stress component
    """
    s = np.asarray(s, dtype=float)
    vm = _von_mises_3d(s)

    # The derivative is undefined at zero stress, report zero there
    with np.errstate(divide="ignore", invalid="ignore"):
        fact = np.where(vm != 0.0, 0.5 / (ys * vm), 0.0)

    sens = np.zeros(s.shape)
    sens[..., 0] = fact * (2.0 * s[..., 0] - s[..., 1] - s[..., 2])
    sens[..., 1] = fact * (2.0 * s[..., 1] - s[..., 0] - s[..., 2])
    sens[..., 2] = fact * (2.0 * s[..., 2] - s[..., 0] - s[..., 1])
    sens[..., 3] = 6.0 * fact * s[..., 3]
    sens[..., 4] = 6.0 * fact * s[..., 4]
    sens[..., 5] = 6.0 * fact * s[..., 5]

    return vm / ys, sens


def von_mises_failure_plane_stress(s, ys):
    s = np.asarray(s, dtype=float)
    return _von_mises_plane_stress(s) / ys


def von_mises_failure_plane_stress_sens(s, ys):
    """
    Returns the failure value and its derivative wrt each stress component
    """
    s = np.asarray(s, dtype=float)
    vm = _von_mises_plane_stress(s)

    with np.errstate(divide="ignore", invalid="ignore"):
        fact = np.where(vm != 0.0, 1.0 / (ys * vm), 0.0)

    sens = np.zeros(s.shape)
    sens[..., 0] = fact * (s[..., 0] - 0.5 * s[..., 1])
    sens[..., 1] = fact * (s[..., 1] - 0.5 * s[..., 0])
    sens[..., 2] = fact * 3.0 * s[..., 2]

    return vm / ys, sens


def _check_stress_sens(name, fail_func, sens_func, s, ys, dh):
    s = np.array(s, dtype=float)
    sens = sens_func(s, ys)[1]

    rel_err = np.zeros(s.size)
    for i in range(s.size):
        s[i] += dh
        pf = fail_func(s, ys)
        s[i] -= 2.0 * dh
        pb = fail_func(s, ys)
        s[i] += dh

        fd = 0.5 * (pf - pb) / dh
        rel_err[i] = np.abs(sens[i] - fd) / np.abs(fd) if fd != 0.0 else np.abs(sens[i])
        print(
            "%s [%d] Value: %15.5f FD %15.5f Rel error: %10.3e"
            % (name, i, sens[i], fd, rel_err[i])
        )

    return rel_err


def check_von_mises_3d_sens(s, ys, dh=1e-6):
    print("Testing the sensitivities of the 3D von Mises failure criteria")
    return _check_stress_sens(
        "VonMises", von_mises_failure_3d, von_mises_failure_3d_stress_sens, s, ys, dh
    )


def check_von_mises_plane_stress_sens(s, ys, dh=1e-6):
    print("Testing the sensitivities of the plane stress von Mises failure criteria")
    return _check_stress_sens(
        "VonMises",
        von_mises_failure_plane_stress,
        von_mises_failure_plane_stress_sens,
        s,
        ys,
        dh,
    )
