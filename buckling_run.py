import json
import logging
import os
import sys

from icecream import ic
import numpy as np

from analysis_utils import get_args
from buckling import FrequencyAnalysis, LinearBuckling
from plane_model import make_model


def settings(argv=None):
    problem = {
        "analysis": "buckling",  # "buckling" or "frequency"
        "nx": 8,
        "yxratio": 2,
        "P": 1e-3,  # axial load at the top of the column
        "load_case": 0,
        "shear_force": False,  # add a shear load case
        "ys": 1.0,  # yield stress for the failure evaluation
    }

    interpolation = {
        "ptype_K": "simp",  # ramp
        "ptype_M": "linear",  # ramp
        "rho0_K": 1e-6,
        "rho0_M": 1e-9,
        "rho0_G": 1e-6,
        "p": 3.0,
        "q": 5.0,
    }

    solver = {
        "N": 6,
        "m": 60,
        "sigma": 0.0,
        "eig_tol": 1e-8,
        "eig_atol": 1e-5,
        "seed": 12345,
    }

    other = {
        "prefix": "output",
        "check_sens": False,  # check the eigenvalue sensitivities
        "plot": False,  # plot the Lanczos convergence history
    }

    settings = [problem, interpolation, solver, other]

    args = get_args(settings, argv)

    return args


def create_analysis(args):
    model = make_model(
        nx=args.nx,
        ny=int(args.yxratio * args.nx),
        Lx=1.0,
        Ly=float(args.yxratio),
        P=args.P,
        shear_force=args.shear_force,
        ptype_K=args.ptype_K,
        ptype_M=args.ptype_M,
        rho0_K=args.rho0_K,
        rho0_M=args.rho0_M,
        rho0_G=args.rho0_G,
        p=args.p,
        q=args.q,
    )

    if args.analysis == "buckling":
        cls = LinearBuckling
    elif args.analysis == "frequency":
        cls = FrequencyAnalysis
    else:
        raise ValueError(f"Unknown analysis {args.analysis!r}")

    analysis = cls(
        model,
        load_case=args.load_case,
        sigma=args.sigma,
        max_lanczos_vecs=args.m,
        num_eigvals=args.N,
        eig_tol=args.eig_tol,
        eig_atol=args.eig_atol,
        seed=args.seed,
    )

    return model, analysis


def run(args):
    model, analysis = create_analysis(args)

    nconv = analysis.solve()

    print(f"\n{args.analysis.capitalize()} analysis, sigma = {analysis.get_sigma()}")
    print(f"Converged eigenpairs: {nconv} of {args.N}")
    for n in range(nconv):
        lam, err = analysis.extract_eigenvalue(n)
        print("lam[%2d] = %15.8e, rel.err = %10.3e" % (n, lam, err))

    ic(analysis.check_orthogonality())

    if args.analysis == "buckling":
        fail = model.eval_failure(analysis.path, args.ys)
        ic(np.max(fail))

    if args.check_sens and nconv > 0:
        analysis.check_eigen_dv_sens(0)

    if not os.path.isdir(args.prefix):
        os.makedirs(args.prefix)

    if args.plot:
        analysis.plot_convergence(os.path.join(args.prefix, "convergence.png"))

    with open(os.path.join(args.prefix, "profile.json"), "w") as f:
        json.dump(analysis.profile, f, indent=4)

    return analysis


def main(argv=None):
    logging.basicConfig(stream=sys.stdout, level=logging.INFO)
    logging.getLogger("matplotlib.font_manager").disabled = True

    args = settings(argv)
    run(args)

    return 0


if __name__ == "__main__":
    sys.exit(main())
