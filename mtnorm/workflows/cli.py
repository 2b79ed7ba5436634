"""Console entry points for the mtnorm workflows."""

import argparse
import importlib
import logging
from pathlib import Path
import sys

from mtnorm.utils.logging import logger

cli_flows = {
    "mtnormalise": ("mtnorm.workflows.normalise", "MTNormaliseFlow"),
}


def _str2bool(value):
    if isinstance(value, bool):
        return value
    if value.lower() in ("yes", "true", "t", "y", "1"):
        return True
    if value.lower() in ("no", "false", "f", "n", "0"):
        return False
    raise argparse.ArgumentTypeError(f"Boolean value expected, got {value!r}")


def build_parser(prog="mtnormalise"):
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Multi-tissue informed log-domain intensity normalisation.",
        epilog=(
            "Example usage: mtnormalise wmfod.nii.gz wmfod_norm.nii.gz "
            "gm.nii.gz gm_norm.nii.gz csf.nii.gz csf_norm.nii.gz "
            "--mask mask.nii.gz"
        ),
    )
    parser.add_argument(
        "input_files",
        nargs="+",
        help="list of all input and output tissue compartment files, as pairs.",
    )
    parser.add_argument(
        "--mask",
        required=True,
        help="the mask defines the data used to compute the intensity "
        "normalisation. This option is mandatory.",
    )
    parser.add_argument(
        "--order",
        type=int,
        choices=[0, 1, 2, 3],
        help="the maximum order of the polynomial basis used to fit the "
        "normalisation field in the log-domain (default: 3).",
    )
    parser.add_argument("--niter", type=int, help="number of iterations (default: 15).")
    parser.add_argument(
        "--reference",
        type=float,
        help="the (positive) reference value to which the summed tissue "
        "compartments will be normalised (default: 0.282095, SH DC term for "
        "unit angular integral).",
    )
    parser.add_argument(
        "--balanced",
        nargs="?",
        const=True,
        default=None,
        type=_str2bool,
        help="incorporate the per-tissue balancing factors into scaling of "
        "the output images.",
    )
    parser.add_argument("--num_threads", type=int, help="number of threads.")
    parser.add_argument("--config_file", help="TOML configuration file.")
    parser.add_argument(
        "--check_norm",
        help="output the final estimated spatially varying intensity level "
        "that is used for normalisation.",
    )
    parser.add_argument(
        "--check_mask",
        help="output the final mask used to compute the normalisation.",
    )
    parser.add_argument(
        "--check_factors",
        help="output the tissue balance factors computed during normalisation.",
    )
    parser.add_argument("--out_dir", default="", help="output directory.")
    parser.add_argument(
        "--force", action="store_true", help="force overwriting output files."
    )
    parser.add_argument(
        "--log_level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="log messages display level.",
    )
    parser.add_argument("--log_file", help="log messages are saved in this file.")
    return parser


def run(argv=None):
    """Run the workflow named after the invoked command."""
    command = Path(sys.argv[0]).name
    if command not in cli_flows:
        command = "mtnormalise"
    module_name, flow_name = cli_flows[command]

    args = vars(build_parser(prog=command).parse_args(argv))

    handler = (
        logging.FileHandler(args.pop("log_file"))
        if args.get("log_file")
        else logging.StreamHandler()
    )
    args.pop("log_file", None)
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, args.pop("log_level")))

    module = importlib.import_module(module_name)
    flow = getattr(module, flow_name)(
        force=args.pop("force"), out_dir=args.pop("out_dir")
    )
    try:
        return flow.run(**args)
    finally:
        logger.removeHandler(handler)
        handler.close()
