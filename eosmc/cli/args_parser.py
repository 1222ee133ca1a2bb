"""Argument Parser for the eosmc CLI
==================================

One subcommand per task. Sampler flags map one-to-one onto the options of
the ``mcmc`` and ``pmc`` configuration sections and override them.
"""

import argparse
import time
from pathlib import Path

from eosmc._version import __version__


def parse_seed(value: str) -> int:
    """Seed argument: a non-negative integer or ``time``."""
    if value == "time":
        return int(time.time())
    try:
        seed = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"seed must be an integer or 'time', got: {value}") from e
    if seed < 0:
        raise argparse.ArgumentTypeError(f"seed must be non-negative, got: {seed}")
    return seed


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to analysis configuration file (YAML/JSON)",
    )
    parser.add_argument(
        "--posterior",
        type=str,
        default=None,
        help="Name of the posterior to use (default: first defined)",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("./eosmc_results"),
        help="Output directory for result summaries (default: %(default)s)",
    )
    parser.add_argument(
        "--output-file",
        type=Path,
        default=None,
        help="HDF5 chunk store; runs resume from it if it already exists",
    )
    parser.add_argument(
        "--seed",
        type=parse_seed,
        default=None,
        help="Random seed, or 'time' for the current time",
    )


def _add_mcmc_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("MCMC Options")
    group.add_argument("--number-of-chains", type=int, help="Number of independent chains")
    group.add_argument("--chunk-size", type=int, help="Samples per stored chunk")
    group.add_argument("--chunks", type=int, help="Main-run chunks per chain")
    group.add_argument("--prerun-iterations-min", type=int, help="Minimum prerun iterations")
    group.add_argument("--prerun-iterations-max", type=int, help="Maximum prerun iterations")
    group.add_argument(
        "--prerun-iterations-update", type=int, help="Prerun iterations between R-value checks"
    )
    group.add_argument(
        "--rvalue-threshold",
        "--scale-reduction",
        dest="rvalue_threshold",
        type=float,
        help="R-value below which the prerun has converged",
    )
    group.add_argument(
        "--proposal",
        choices=["MultivariateGaussian", "MultivariateStudentT", "IndependenceGaussian"],
        help="Proposal density",
    )
    group.add_argument(
        "--student-t-degrees-of-freedom", type=float, help="Degrees of freedom of Student-t proposals"
    )
    group.add_argument(
        "--skip-prerun",
        dest="need_prerun",
        action="store_false",
        default=None,
        help="Start the main run without a prerun",
    )
    group.add_argument(
        "--prerun-only",
        action="store_true",
        help="Run and store the prerun only",
    )
    group.add_argument(
        "--store-prerun", action="store_true", default=None, help="Store prerun chunks"
    )
    group.add_argument(
        "--no-strict-rvalue",
        dest="use_strict_rvalue_definition",
        action="store_false",
        default=None,
        help="Check the R-value on scan parameters only",
    )
    group.add_argument(
        "--strict",
        action="store_true",
        default=None,
        help="Fail if the prerun does not converge",
    )
    group.add_argument("--parallelize", action="store_true", default=None, help="Run chains on threads")
    group.add_argument("--progress", dest="show_progress", action="store_true", default=None,
                       help="Show a progress bar for the main run")


def _add_pmc_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("PMC Options")
    group.add_argument("--samples-per-component", type=int, help="Samples per component and step")
    group.add_argument("--final-samples", type=int, help="Number of final weighted samples")
    group.add_argument("--max-updates", type=int, help="Maximum number of mixture updates")
    group.add_argument("--adaptation-steps", type=int, help="Updates before convergence is tested")
    group.add_argument("--degrees-of-freedom", type=float,
                       help="Student-t components with this many degrees of freedom")
    group.add_argument("--minimum-eff-sample-size", type=float, help="Normalised ESS floor")
    group.add_argument("--ignore-eff-sample-size", action="store_true", default=None,
                       help="Ignore the ESS criterion")
    group.add_argument("--maximum-relative-std-deviation", type=float,
                       help="Evidence relative standard deviation ceiling")
    group.add_argument("--minimum-steps", type=int, help="Steps over which the criteria must hold")
    group.add_argument("--crop-highest-weights", type=int, help="Number of largest weights capped")
    group.add_argument("--adjust-sample-size", action="store_true", default=None,
                       help="Grow the sample size when the ESS is poor")
    group.add_argument("--group-by-r-value", type=float,
                       help="R-value threshold for grouping chains and merging components")
    group.add_argument("--ignore-groups", type=int, nargs="+", help="Chain groups to drop")
    group.add_argument("--patch-length", type=int, help="Chain patch length for clustering")
    group.add_argument("--skip-initial", type=float, help="Fraction of each chain skipped")
    group.add_argument("--target-ncomponents", type=int, help="Components per chain group")
    group.add_argument("--parallelize", action="store_true", default=None,
                       help="Evaluate weights on threads")


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser for the eosmc CLI."""
    epilog_text = f"""
Examples:
  %(prog)s mcmc --config analysis.yaml --output-file run.hdf5 --seed 1
  %(prog)s mcmc --config analysis.yaml --prerun-only --output-file prerun.hdf5
  %(prog)s pmc --config analysis.yaml --chains-file prerun.hdf5 --output-file pmc.hdf5
  %(prog)s optimize --config analysis.yaml --posterior default
  %(prog)s goodness-of-fit --config analysis.yaml --point 0.1 2.3
  %(prog)s list posteriors --config analysis.yaml

eosmc v{__version__}
        """

    parser = argparse.ArgumentParser(
        prog="eosmc",
        description="Markov chain and population Monte Carlo sampling of parameter posteriors",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=epilog_text,
    )
    parser.add_argument("--version", action="version", version=f"eosmc v{__version__}")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging output")
    parser.add_argument("--debug", action="store_true", help="Alias for --verbose")
    parser.add_argument("--quiet", action="store_true", help="Suppress all output except errors")

    subparsers = parser.add_subparsers(dest="command", required=True)

    mcmc = subparsers.add_parser("mcmc", help="Sample with Markov chains")
    _add_common_arguments(mcmc)
    _add_mcmc_arguments(mcmc)

    pmc = subparsers.add_parser("pmc", help="Sample with population Monte Carlo")
    _add_common_arguments(pmc)
    _add_pmc_arguments(pmc)
    pmc.add_argument(
        "--chains-file",
        type=Path,
        help="MCMC chunk store whose chains initialise the mixture",
    )
    pmc.add_argument(
        "--chains-run",
        choices=["prerun", "main"],
        default="prerun",
        help="Which stored MCMC run initialises the mixture (default: %(default)s)",
    )
    pmc.add_argument(
        "--update",
        action="store_true",
        help="Resume from the last mixture stored in --output-file",
    )
    pmc.add_argument(
        "--final",
        action="store_true",
        help="Skip the updates and draw the final samples",
    )
    pmc.add_argument(
        "--draw-samples",
        action="store_true",
        help="Store one step of unweighted samples and stop",
    )

    optimize = subparsers.add_parser("optimize", help="Find the posterior mode")
    _add_common_arguments(optimize)
    optimize.add_argument("--point", type=float, nargs="+", help="Starting point")
    optimize.add_argument("--max-iterations", type=int, default=10000,
                          help="Optimizer iteration limit (default: %(default)s)")

    gof = subparsers.add_parser("goodness-of-fit", help="Chi-square decomposition at a point")
    _add_common_arguments(gof)
    gof.add_argument("--point", type=float, nargs="+", required=True, help="Point to evaluate")

    clusters = subparsers.add_parser(
        "find-clusters", help="Cluster stored MCMC chains into an initial mixture"
    )
    _add_common_arguments(clusters)
    clusters.add_argument("--chains-file", type=Path, required=True, help="MCMC chunk store")
    clusters.add_argument("--chains-run", choices=["prerun", "main"], default="prerun")
    _add_clustering_arguments(clusters)

    listing = subparsers.add_parser("list", help="List configured priors, likelihoods or posteriors")
    listing.add_argument("what", choices=["priors", "likelihoods", "posteriors"])
    listing.add_argument("--config", type=Path, required=True, help="Analysis configuration file")

    return parser


def _add_clustering_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("Clustering Options")
    group.add_argument("--group-by-r-value", type=float, help="R-value threshold for grouping chains")
    group.add_argument("--ignore-groups", type=int, nargs="+", help="Chain groups to drop")
    group.add_argument("--patch-length", type=int, help="Chain patch length")
    group.add_argument("--skip-initial", type=float, help="Fraction of each chain skipped")
    group.add_argument("--target-ncomponents", type=int, help="Components per chain group")


MCMC_OPTIONS = (
    "number_of_chains",
    "chunk_size",
    "chunks",
    "prerun_iterations_min",
    "prerun_iterations_max",
    "prerun_iterations_update",
    "rvalue_threshold",
    "proposal",
    "student_t_degrees_of_freedom",
    "need_prerun",
    "store_prerun",
    "use_strict_rvalue_definition",
    "strict",
    "parallelize",
    "show_progress",
    "seed",
)

PMC_OPTIONS = (
    "samples_per_component",
    "final_samples",
    "max_updates",
    "adaptation_steps",
    "degrees_of_freedom",
    "minimum_eff_sample_size",
    "ignore_eff_sample_size",
    "maximum_relative_std_deviation",
    "minimum_steps",
    "crop_highest_weights",
    "adjust_sample_size",
    "group_by_r_value",
    "ignore_groups",
    "patch_length",
    "skip_initial",
    "target_ncomponents",
    "parallelize",
    "seed",
)


def sampler_overrides(args, options: tuple[str, ...]) -> dict:
    """Options given on the command line, ready to override the config section."""
    overrides = {name: getattr(args, name, None) for name in options}
    if getattr(args, "output_file", None) is not None:
        overrides["output_file"] = str(args.output_file)
    return {k: v for k, v in overrides.items() if v is not None}


def validate_args(args) -> bool:
    """Validate parsed command-line arguments.

    Returns
    -------
    bool
        True if arguments are valid, False otherwise
    """
    if args.verbose and args.quiet:
        print("Error: Cannot specify both --verbose and --quiet")
        return False

    config = getattr(args, "config", None)
    if config is not None and not config.exists():
        print(f"Error: Configuration file not found: {config}")
        return False

    chains_file = getattr(args, "chains_file", None)
    if chains_file is not None and not chains_file.exists():
        print(f"Error: Chains file not found: {chains_file}")
        return False

    if args.command == "mcmc" and args.prerun_only:
        if args.need_prerun is False:
            print("Error: Cannot specify both --prerun-only and --skip-prerun")
            return False

    if args.command == "pmc":
        if args.update and args.output_file is None:
            print("Error: --update requires --output-file")
            return False
        if args.update and args.chains_file is not None:
            print("Error: Cannot specify both --update and --chains-file")
            return False

    return True
