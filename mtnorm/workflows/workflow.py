from pathlib import Path

from mtnorm.utils.logging import logger

try:  # standard module since Python 3.11
    import tomllib as toml
except ImportError:
    # available for older Python via pip
    import tomli as toml


class Workflow:
    def __init__(self, *, force=False, out_dir=""):
        """Initialize the basic workflow object.

        This object takes care of any workflow operation that is common to all
        the workflows. Every new workflow should extend this class.
        """
        self._force_overwrite = force
        self._out_dir = out_dir
        self.last_generated_outputs = None
        self.flat_outputs = []

    def resolve_outputs(self, outputs):
        """Place relative output paths inside the workflow output directory."""
        resolved = []
        for output in outputs:
            path = Path(output)
            if self._out_dir and not path.is_absolute():
                path = Path(self._out_dir) / path
            resolved.append(path)
        return resolved

    def manage_output_overwrite(self):
        """Check if a file will be overwritten upon processing the inputs.

        If it is bound to happen, an action is taken depending on
        self._force_overwrite (or --force via command line). A log message is
        output independently of the outcome to tell the user something
        happened.
        """
        duplicates = []
        for output in self.flat_outputs:
            if Path(output).is_file():
                duplicates.append(output)

        if len(duplicates) > 0:
            if self._force_overwrite:
                logger.info("The following output files are about to be overwritten.")
            else:
                logger.info(
                    "The following output files already exist, the "
                    "workflow will not continue processing any "
                    "further. Add the --force flag to allow output "
                    "files overwrite."
                )

            for dup in duplicates:
                logger.info(dup)

            return self._force_overwrite

        return True

    def load_config(self, config_file, *, section, allowed_keys):
        """Read the ``section`` table of a TOML configuration file.

        Parameters
        ----------
        config_file : str or Path or None
            Path to the TOML file. None returns an empty dict.
        section : str
            Name of the table holding this workflow's parameters.
        allowed_keys : iterable of str
            Parameter names the table may define.

        Returns
        -------
        config : dict
        """
        if config_file is None:
            return {}

        config_file = Path(config_file)
        if config_file.suffix != ".toml":
            raise ValueError(f"Configuration file is not a toml file: {config_file}")

        logger.info(f"Reading configuration file: {config_file}")
        with open(config_file, "rb") as f:
            config = toml.load(f)

        params = config.get(section, {})
        unknown = set(params) - set(allowed_keys)
        if unknown:
            raise ValueError(
                f"Invalid keys in [{section}] of {config_file.name}: "
                f"{sorted(unknown)}"
            )
        return params
