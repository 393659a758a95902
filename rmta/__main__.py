import argparse
import os
import pathlib
import numpy as np
import rmta


def read_vector(path):
    """Read a vector from a .npy file or a text file (whitespace or comma separated)."""
    if pathlib.Path(path).suffix == '.npy':
        return np.load(path).reshape(-1)
    with open(path, "r") as f:
        content = f.read().replace(",", " ")
    return np.array(content.split(), dtype=float)


def save_result(result, output):
    arrays = {
        "alphas": result.alphas,
        "deleted": np.array([str(e) for e in result.deleted]),
        "bTS": result.bTS,
        "mTS": result.mTS,
        "wTS": result.wTS,
        "rTS": result.rTS,
        "mMTA": result.fluxes.mMTA
    }
    for a, alpha in enumerate(result.alphas):
        arrays[f"bMTA_{a}"] = result.fluxes.bMTA[float(alpha)]
        arrays[f"wMTA_{a}"] = result.fluxes.wMTA[float(alpha)]
    np.savez_compressed(output, **arrays)


def run_rmta(args):
    if args.print_level > 0:
        print(f"rMTA v{rmta.__version__}")
    network = rmta.load_gem(args.model)
    if args.print_level > 0:
        print(f"Loaded network with {network.num_reactions} reactions "
              f"(in-memory size: {network.object_size:.2f} MB)")
    rxn_fbs = read_vector(args.rxnfbs)
    vref = read_vector(args.vref)
    alpha = args.alpha[0] if len(args.alpha) == 1 else args.alpha
    result = rmta.rmta(
        network, rxn_fbs, vref,
        alpha=alpha,
        epsilon=args.epsilon,
        rxn_ko=args.rxn_ko,
        timelimit=args.timelimit,
        separate_transcript=args.separate_transcript,
        num_workers=args.num_workers,
        print_level=args.print_level,
        solver=args.solver,
        moma_solver=args.moma_solver,
        checkpoint=args.checkpoint,
        batch_size=args.batch_size
    )
    save_result(result, args.output)
    if args.print_level > 0:
        print(f"Results saved to {os.path.abspath(args.output)}")
    return result


def convert_gem(args):
    print(f"rMTA v{rmta.__version__}")
    print(f"Loading {args.input}...")
    m = rmta.mio.load_gem(args.input)
    print(f"Loaded network with {m.num_reactions} reactions (in-memory size: {m.object_size:.2f} MB)")
    print(f"Exporting to {args.output}...")
    rmta.mio.export_gem(m, args.output)
    output_file_size = os.path.getsize(args.output) / (1024 * 1024)
    print(f"File size: {output_file_size:.2f} MB")
    print("Done.")


def get_parser():
    parser = argparse.ArgumentParser(description="rMTA: robust Metabolic Transformation Analysis")
    parser.add_argument(
        "--version",
        action="version",
        version=f"rMTA v{rmta.__version__}"
    )
    subparsers = parser.add_subparsers(help="sub-command help")
    run = subparsers.add_parser("run", help="Run rMTA for all the gene (or reaction) knockouts")
    run.add_argument("model", help="Metabolic network (.miom, or any format supported by cobra)")
    run.add_argument("rxnfbs", help="Desired change of each reaction (+1, 0, -1), .npy or text file")
    run.add_argument("vref", help="Reference fluxes, .npy or text file")
    run.add_argument("--alpha", type=float, nargs="+", default=[0.66],
                     help="Trade-off parameter(s) of MTA (default: 0.66)")
    run.add_argument("--epsilon", type=float, default=0,
                     help="Min perturbation of each reaction (default: 0)")
    run.add_argument("--rxn-ko", action="store_true",
                     help="Knock out reactions instead of genes")
    run.add_argument("--timelimit", type=float, default=np.inf,
                     help="Time limit in seconds for each knockout")
    run.add_argument("--separate-transcript", default="",
                     help="Character that separates the transcripts of a gene")
    run.add_argument("--num-workers", type=int, default=0,
                     help="Threads used by the solver (0 = automatic, 1 = sequential)")
    run.add_argument("--print-level", type=int, default=1)
    run.add_argument("--solver", default=None, choices=[s.value for s in rmta.Solvers],
                     help="MIQP solver (default: selected by PICOS)")
    run.add_argument("--moma-solver", default=None, choices=[s.value for s in rmta.Solvers],
                     help="QP solver for MOMA (default: same as --solver)")
    run.add_argument("--checkpoint", default="temp_rMTA.npz",
                     help="Checkpoint file used to resume an interrupted run")
    run.add_argument("--batch-size", type=int, default=100,
                     help="Knockouts between checkpoints")
    run.add_argument("-o", "--output", default="rmta_results.npz",
                     help="Output file (.npz)")
    run.set_defaults(func=run_rmta)
    convert = subparsers.add_parser("convert", help="Convert a model to the compressed network format")
    convert.add_argument(
        "input",
        help="Input model file (if cobra is installed, any format supported by cobra is allowed)"
    )
    convert.add_argument(
        "output",
        help="Output file in the compressed network format (.miom)"
    )
    convert.set_defaults(func=convert_gem)
    return parser


def main(argv=None):
    args = get_parser().parse_args(argv)
    if hasattr(args, "func") and args.func:
        return args.func(args)


if __name__ == '__main__':
    main()
